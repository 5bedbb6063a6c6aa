from fastapi import APIRouter, Depends, File, Form, UploadFile
from starlette.concurrency import run_in_threadpool

from .auth import auth_required
from .chats import create_chat, list_chats
from .db import get_db
from .lifecycle import delete_and_notify, fetch_history, send_and_deliver
from .realtime import delivery
from .schemas import ERROR_RESPONSES, ChatCreateIn, SendMessageIn, SweepReportOut
from .sweep import run_sweep
from .uploads import message_type_for, remove_upload, save_upload

router = APIRouter(prefix="/api/messages", tags=["messages"], responses=ERROR_RESPONSES)


@router.post("", status_code=201)
async def send(data: SendMessageIn, me: dict = Depends(auth_required)):
    message, receipt = await send_and_deliver(
        delivery, get_db(), me["_id"], data.receiverId, data.content, data.messageType,
    )
    return {"success": True, "message": "Message sent successfully", "data": message, "delivery": receipt.to_dict()}


@router.post("/upload", status_code=201)
async def upload(receiverId: str = Form(...), file: UploadFile = File(...), me: dict = Depends(auth_required)):
    path = await run_in_threadpool(save_upload, file)
    try:
        message, receipt = await send_and_deliver(
            delivery, get_db(), me["_id"], receiverId, path, message_type_for(file.content_type),
        )
    except Exception:
        remove_upload(path)
        raise
    return {"success": True, "message": "File message sent", "data": message, "delivery": receipt.to_dict()}


@router.delete("/{message_id}")
async def delete(message_id: str, me: dict = Depends(auth_required)):
    payload = await delete_and_notify(delivery, get_db(), message_id, me["_id"])
    return {"success": True, "message": "Message deleted", **payload}


@router.get("/chats/list")
def chat_list(me: dict = Depends(auth_required)):
    return {"success": True, "chats": list_chats(get_db(), me["_id"])}


@router.post("/chat/create", status_code=201)
def chat_create(data: ChatCreateIn, me: dict = Depends(auth_required)):
    chat, created = create_chat(get_db(), me["_id"], data.receiverId)
    return {
        "success": True,
        "message": "Chat created successfully" if created else "Chat already exists",
        "created": created,
        "chat": chat,
    }


@router.post("/chats/cleanup", response_model=SweepReportOut)
def chats_cleanup(me: dict = Depends(auth_required)):
    return run_sweep(get_db()).to_dict()


@router.get("/{chat_id}")
def history(chat_id: str, me: dict = Depends(auth_required)):
    return {"success": True, "messages": fetch_history(get_db(), chat_id, me["_id"])}
