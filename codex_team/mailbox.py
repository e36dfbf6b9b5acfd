"""
Mailbox Communication Layer for Codex Team.

Every operation persists first and notifies second: the inbox or mailbox
write happens before the recipient's pane is poked, and a message is only
stamped notified_at when the notifier reported success. A failed or
raising notifier leaves the stored message in place for the next poll.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .config import LEADER_WORKER_NAME
from .models import MailboxMessage
from .tmux_session import send_to_worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotifierTarget:
    """Where a trigger message should be delivered."""
    worker_name: str
    worker_index: Optional[int] = None
    pane_id: Optional[str] = None


Notifier = Callable[[NotifierTarget, str], bool]

__all__ = [
    'NotifierTarget',
    'Notifier',
    'queue_inbox_instruction',
    'queue_direct_mailbox_message',
    'queue_broadcast_mailbox_message',
    'make_tmux_notifier',
]


def _notify(notify: Notifier, target: NotifierTarget, message: str) -> bool:
    try:
        return bool(notify(target, message))
    except Exception as e:
        logger.warning(f"Notify {target.worker_name} failed: {e}")
        return False


def queue_inbox_instruction(store, team: str, worker_name: str, worker_index: int, inbox: str,
                            trigger_message: str, notify: Notifier, pane_id: Optional[str] = None) -> bool:
    """
    Overwrite a worker's inbox, then trigger it.

    Returns:
        The notifier's result. The inbox is written either way.
    """
    store.write_worker_inbox(team, worker_name, inbox)
    return _notify(notify, NotifierTarget(worker_name, worker_index, pane_id), trigger_message)


def queue_direct_mailbox_message(store, team: str, from_worker: str, to_worker: str, body: str,
                                 trigger_message: str, notify: Notifier,
                                 to_worker_index: Optional[int] = None,
                                 to_pane_id: Optional[str] = None) -> MailboxMessage:
    """Store one message for to_worker and notify it; mark notified on success."""
    message = store.append_mailbox_message(team, from_worker, to_worker, body)
    target = NotifierTarget(to_worker, to_worker_index, to_pane_id)
    if _notify(notify, target, trigger_message):
        store.mark_message_notified(team, to_worker, message.message_id)
        message = message.model_copy(update={'notified_at': _notified_at(store, team, to_worker, message)})
    return message


def queue_broadcast_mailbox_message(store, team: str, from_worker: str, recipients: Sequence[NotifierTarget],
                                    body: str, trigger_for: Callable[[str], str],
                                    notify: Notifier) -> List[MailboxMessage]:
    """
    Store one message per recipient (sender excluded) and notify each.

    Notifications are independent: one recipient failing does not stop the
    others, and each message is marked notified on its own.
    """
    by_name: Dict[str, NotifierTarget] = {r.worker_name: r for r in recipients}
    messages = store.broadcast_mailbox_message(team, from_worker, body, recipients=list(by_name))

    delivered = []
    for message in messages:
        target = by_name[message.to_worker]
        if _notify(notify, target, trigger_for(target.worker_name)):
            store.mark_message_notified(team, target.worker_name, message.message_id)
            message = message.model_copy(update={'notified_at': _notified_at(store, team, target.worker_name, message)})
        delivered.append(message)

    notified = sum(1 for m in delivered if m.notified_at)
    logger.info(f"Team {team}: broadcast from {from_worker} stored for {len(delivered)}, notified {notified}")
    return delivered


def _notified_at(store, team: str, worker: str, message: MailboxMessage) -> Optional[str]:
    for stored in store.list_mailbox_messages(team, worker):
        if stored.message_id == message.message_id:
            return stored.notified_at
    return None


def make_tmux_notifier(session: str, leader_pane_id: Optional[str] = None) -> Notifier:
    """
    Default notifier: type the trigger into the recipient's tmux pane.

    The leader is never poked this way; its unread messages are picked up by
    the leader nudge service.
    """
    def notify(target: NotifierTarget, message: str) -> bool:
        if target.worker_name == LEADER_WORKER_NAME:
            return False
        if leader_pane_id and target.pane_id == leader_pane_id:
            logger.warning(f"Not notifying {target.worker_name}: pane {target.pane_id} is the leader's")
            return False
        if target.pane_id is None and target.worker_index is None:
            logger.warning(f"Not notifying {target.worker_name}: no pane id or index known")
            return False
        return send_to_worker(session, target.worker_index or 0, message, pane_id=target.pane_id)

    return notify
