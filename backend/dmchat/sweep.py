"""Reconciliation sweep over active chats.

Deactivates chats whose participants no longer exist and folds duplicate
active chats of one pair key into the most recently active one. It only ever
deactivates and reassigns, so it can run next to live traffic and as often as
wanted.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass

from pymongo.database import Database

from .audit import log_event
from .chats import refresh_last_message
from .models import utcnow

log = logging.getLogger(__name__)


@dataclass
class SweepReport:
    orphaned: int = 0
    merged: int = 0
    moved_messages: int = 0

    @property
    def total(self) -> int:
        return self.orphaned + self.merged

    @property
    def changed(self) -> bool:
        return bool(self.total or self.moved_messages)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": f"Cleaned up {self.orphaned} orphaned chats and merged {self.merged} duplicate chats",
            "orphanedChats": self.orphaned,
            "mergedChats": self.merged,
            "movedMessages": self.moved_messages,
            "totalCleaned": self.total,
        }


def _activity(chat: dict):
    return chat.get("last_message_at") or chat.get("created_at")


def _deactivate(db: Database, chat_ids, superseded_by=None):
    update = {"active": False, "updated_at": utcnow()}
    if superseded_by is not None:
        update["superseded_by"] = superseded_by
    db.chats.update_many({"_id": {"$in": chat_ids}}, {"$set": update})


def _move_stragglers(db: Database) -> int:
    """Messages that landed in an already-superseded chat follow it to its successor."""
    moved = 0
    touched = set()
    for chat in db.chats.find({"active": False, "superseded_by": {"$ne": None}}, {"superseded_by": 1}):
        res = db.messages.update_many({"chat_id": chat["_id"]}, {"$set": {"chat_id": chat["superseded_by"]}})
        if res.modified_count:
            moved += res.modified_count
            touched.add(chat["superseded_by"])
    for chat_id in touched:
        current = db.chats.find_one({"_id": chat_id}, {"last_message": 1})
        if current is not None:
            refresh_last_message(db, chat_id, current.get("last_message"))
    return moved


def run_sweep(db: Database) -> SweepReport:
    report = SweepReport()
    chats = list(db.chats.find({"active": True}))

    user_ids = {p for chat in chats for p in chat.get("participants", [])}
    existing = {u["_id"] for u in db.users.find({"_id": {"$in": list(user_ids)}}, {"_id": 1})} if user_ids else set()

    orphans = []
    by_key = defaultdict(list)
    for chat in chats:
        participants = chat.get("participants", [])
        if len(participants) != 2 or any(p not in existing for p in participants):
            orphans.append(chat["_id"])
            continue
        by_key[chat["pair_key"]].append(chat)

    if orphans:
        _deactivate(db, orphans)
        report.orphaned = len(orphans)

    for key, group in by_key.items():
        if len(group) < 2:
            continue
        group.sort(key=lambda c: (_activity(c), c["_id"]), reverse=True)
        keep, duplicates = group[0], group[1:]
        dup_ids = [c["_id"] for c in duplicates]

        # deactivate first so no new send resolves to a duplicate
        _deactivate(db, dup_ids, superseded_by=keep["_id"])
        res = db.messages.update_many({"chat_id": {"$in": dup_ids}}, {"$set": {"chat_id": keep["_id"]}})
        report.moved_messages += res.modified_count
        report.merged += len(dup_ids)

        refresh_last_message(db, keep["_id"], keep.get("last_message"))
        log.info("Merged %d duplicate chat(s) of %s into %s", len(dup_ids), key, keep["_id"])

    report.moved_messages += _move_stragglers(db)

    if report.changed:
        log_event(db, "system", "RECONCILE_CHATS", report.to_dict())
    log.info("Reconciliation sweep: %d orphaned, %d merged, %d messages moved",
             report.orphaned, report.merged, report.moved_messages)
    return report
