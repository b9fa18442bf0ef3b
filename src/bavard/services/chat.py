# src/bavard/services/chat.py
"""Send pipeline tying the conversation store, notifications and the assistant together."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bavard.core.constants import (
    ASSISTANT_USER_ID,
    SYSTEM_BROADCAST_DISPLAY_NAME,
    SYSTEM_BROADCAST_USER_ID,
)
from bavard.core.errors import InvalidRequestError, OperationNotPermittedError, WriteError
from bavard.core.settings import settings
from bavard.db.session import SessionFactory
from bavard.models import Message, User
from bavard.schemas.message import MessageKind, MessagePayload
from bavard.services.contacts import ContactService
from bavard.services.conversation_store import ConversationStore, conversation_id_for
from bavard.services.generation import (
    GenerationClient,
    generate_assistant_reply,
    get_generation_client,
    history_from_messages,
)
from bavard.services.notification_ledger import NotificationLedger
from bavard.services.storage import ObjectStorage, store_data_uri

logger = logging.getLogger(__name__)


class ChatService:
    """Validates and delivers user, assistant and system messages."""

    def __init__(
        self,
        store: ConversationStore,
        ledger: NotificationLedger,
        contacts: ContactService,
        generation: GenerationClient | None = None,
        history_limit: int | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.contacts = contacts
        self.generation = generation
        self.history_limit = history_limit or settings.assistant_history_limit
        self._assistant_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def check_can_send(self, db: Session, sender_id: str, peer_id: str) -> None:
        """Reject sends the store must never see.

        Raises:
            InvalidRequestError: If the peer is the sender.
            OperationNotPermittedError: If the peer is the broadcast account or
                not a contact.
        """
        if peer_id == SYSTEM_BROADCAST_USER_ID:
            raise OperationNotPermittedError("The system account does not accept messages")
        if peer_id == sender_id:
            raise InvalidRequestError("You cannot message yourself")
        if peer_id != ASSISTANT_USER_ID and not self.contacts.are_contacts(db, sender_id, peer_id):
            raise OperationNotPermittedError("You can only message your contacts")

    def send(
        self,
        db: Session,
        sender: User,
        peer_id: str,
        payload: MessagePayload,
        view_once: bool = False,
    ) -> Message:
        """Append a message and record the recipient's notification in one transaction.

        Messages to the assistant never create notifications.
        """
        self.check_can_send(db, sender.id, peer_id)
        return self._deliver(db, sender.id, sender.name, peer_id, payload, view_once)

    async def send_media(
        self,
        db: Session,
        storage: ObjectStorage,
        sender: User,
        peer_id: str,
        kind: MessageKind,
        data_uri: str,
        file_name: str,
        view_once: bool = False,
    ) -> Message:
        """Upload media first, then send it; an upload failure aborts the message."""
        self.check_can_send(db, sender.id, peer_id)
        stored = await store_data_uri(storage, data_uri, file_name)
        payload = MessagePayload(kind=kind, url=stored.url, file_name=file_name)
        return self._deliver(db, sender.id, sender.name, peer_id, payload, view_once)

    def send_system_message(self, db: Session, recipient_id: str, text: str) -> Message:
        """Post an official message from the broadcast account into a user's conversation."""
        if recipient_id in (SYSTEM_BROADCAST_USER_ID, ASSISTANT_USER_ID):
            raise InvalidRequestError("Reserved peers cannot receive system messages")
        payload = MessagePayload(kind="text", text=text)
        message = self._deliver(
            db,
            SYSTEM_BROADCAST_USER_ID,
            SYSTEM_BROADCAST_DISPLAY_NAME,
            recipient_id,
            payload,
            False,
        )
        logger.info("System message %s sent to %s", message.id, recipient_id)
        return message

    def _deliver(
        self,
        db: Session,
        sender_id: str,
        sender_name: str | None,
        peer_id: str,
        payload: MessagePayload,
        view_once: bool,
    ) -> Message:
        conversation = self.store.ensure_conversation(db, sender_id, peer_id)
        message = self.store.append(
            db,
            conversation.id,
            sender_id,
            payload,
            view_once=view_once,
            commit=False,
        )
        if peer_id != ASSISTANT_USER_ID:
            self.ledger.record(
                db,
                peer_id,
                sender_id,
                sender_name,
                conversation.id,
                commit=False,
            )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Send from %s to %s failed: %s", sender_id, peer_id, exc)
            raise WriteError("Message could not be sent") from exc
        return message

    async def reply_as_assistant(
        self,
        session_factory: SessionFactory,
        user_id: str,
        prompt: str,
    ) -> Message | None:
        """Generate and append the assistant's reply to ``prompt``.

        Replies in one conversation are serialized. The reply is attempted once;
        if it cannot be stored it is logged and dropped.
        """
        if self.generation is None:
            return None

        conversation_id = conversation_id_for(user_id, ASSISTANT_USER_ID)
        async with self._assistant_locks[conversation_id]:
            self.store.publish_typing(conversation_id, ASSISTANT_USER_ID, True)
            try:
                with session_factory() as db:
                    recent = self.store.recent(db, conversation_id, self.history_limit + 1)
                if recent and recent[-1].sender_id == user_id and recent[-1].text == prompt:
                    recent = recent[:-1]
                history = history_from_messages(recent[-self.history_limit:])

                reply = await generate_assistant_reply(self.generation, prompt, history)

                with session_factory() as db:
                    return self.store.append(
                        db,
                        conversation_id,
                        ASSISTANT_USER_ID,
                        MessagePayload(kind="text", text=reply),
                    )
            except WriteError as exc:
                logger.warning("Assistant reply for %s was not stored: %s", user_id, exc)
                return None
            finally:
                self.store.publish_typing(conversation_id, ASSISTANT_USER_ID, False)


class _ChatServiceSingleton:
    """Singleton wrapper so assistant replies share one set of conversation locks."""

    _instance: ChatService | None = None

    @classmethod
    def get_instance(cls) -> ChatService:
        if cls._instance is None:
            store = ConversationStore()
            cls._instance = ChatService(
                store,
                NotificationLedger(store.bus),
                ContactService(store),
                generation=get_generation_client(),
            )
        return cls._instance


def get_chat_service() -> ChatService:
    """Return the process-wide chat service."""
    return _ChatServiceSingleton.get_instance()
