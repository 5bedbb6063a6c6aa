from pymongo.database import Database

from .models import utcnow


def log_event(db: Database, actor: str, action: str, details: dict = None):
    """
    Record an audit event.

    :param db: MongoDB database handle.
    :param actor: who performed the action (a user id, or 'system' for the sweep).
    :param action: what happened (e.g. 'DELETE_MESSAGE', 'RECONCILE_CHATS').
    :param details: extra information about the event.
    """
    if details is None:
        details = {}

    log_entry = {
        "timestamp": utcnow(),
        "actor": actor,
        "action": action,
        "details": details
    }
    db.audit_log.insert_one(log_entry)
