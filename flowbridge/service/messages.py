from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flowbridge.logging import get_logger, preview
from flowbridge.service.analytics import AnalyticsDispatcher
from flowbridge.service.authorization import is_group_authorized, is_user_authorized
from flowbridge.service.connection import ConnectionHandle, InboundMessage
from flowbridge.service.errors import NotFoundError, UnavailableError, ValidationError
from flowbridge.service.instances import InstanceManager
from flowbridge.service.pipeline import ResponsePipeline
from flowbridge.service.security import is_valid_phone_number, sanitize_input
from flowbridge.storage.conversations import ConversationStore
from flowbridge.storage.models import ConversationKey, InstanceConfig

logger = get_logger(__name__)

DENIAL_NOTICE = (
    "I'm sorry, you are not authorized to use this service. "
    "Please contact the administrator if you believe this is an error."
)
APOLOGY_REPLY = (
    "I encountered an error while processing your message. Please try again later."
)

_MENTION_TOKEN = re.compile(r"@\d+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageRouter:
    """Route inbound chat messages through the AI pipeline and send API-triggered messages."""

    def __init__(
        self,
        manager: InstanceManager,
        conversations: ConversationStore,
        pipeline: ResponsePipeline,
        analytics: Optional[AnalyticsDispatcher] = None,
    ) -> None:
        self.manager = manager
        self.conversations = conversations
        self.pipeline = pipeline
        self.analytics = analytics

    async def handle_inbound(
        self, config: InstanceConfig, handle: ConnectionHandle, message: InboundMessage
    ) -> None:
        """Process one inbound message; errors are logged, never raised."""
        try:
            await self._process(config, handle, message)
        except Exception as exc:
            logger.error(
                "inbound_processing_failed",
                instance_id=config.instance_id,
                sender=message.from_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            try:
                await handle.send_message(message.from_id, APOLOGY_REPLY)
            except Exception as reply_exc:
                logger.error(
                    "apology_send_failed",
                    instance_id=config.instance_id,
                    error=str(reply_exc),
                )

    async def _process(
        self, config: InstanceConfig, handle: ConnectionHandle, message: InboundMessage
    ) -> None:
        instance_id = config.instance_id
        options = config.options
        if message.from_me and not options.process_self_messages:
            logger.debug("self_message_ignored", instance_id=instance_id)
            return

        logger.info(
            "message_received",
            instance_id=instance_id,
            sender=message.from_id,
            body_preview=preview(message.body),
        )

        if message.is_group:
            if not is_group_authorized(message.from_id, config):
                logger.debug("group_not_allowed", instance_id=instance_id, group=message.from_id)
                return
        elif not is_user_authorized(message.from_id, config):
            logger.warning("unauthorized_sender", instance_id=instance_id, sender=message.from_id)
            if options.notify_unauthorized:
                await handle.send_message(message.from_id, DENIAL_NOTICE)
            return

        body = message.body or ""
        if message.is_group:
            body = self._strip_group_trigger(body, message, handle, options.command_prefix)
            if body is None:
                return

        content = sanitize_input(body).strip()
        if not content:
            logger.debug("empty_message_ignored", instance_id=instance_id)
            return

        key = ConversationKey(instance_id, message.from_id)
        conversation = await self.conversations.load(key)

        if options.show_typing_indicator:
            try:
                await handle.send_typing(message.from_id)
            except Exception as exc:
                logger.warning(
                    "typing_indicator_failed", instance_id=instance_id, error=str(exc)
                )

        sender: Dict[str, Any] = {
            "id": message.sender_id,
            "name": message.sender_name or "Unknown",
        }
        if message.is_group:
            sender["inGroup"] = message.from_id
        payload = {
            "message": content,
            "sender": sender,
            "conversation": conversation.to_dict(),
            "timestamp": _now_iso(),
            "instanceId": instance_id,
            "messageType": message.message_type,
            "isGroup": message.is_group,
        }

        reply = await self.pipeline.respond(
            config.remote_workflow, payload, conversation.messages
        )
        await handle.send_message(message.from_id, reply)

        conversation.append_turn(
            content, reply, author=message.author if message.is_group else None
        )
        await self.conversations.save(conversation, options.max_conversation_length)
        logger.info(
            "message_answered",
            instance_id=instance_id,
            conversation_key=str(key),
            reply_preview=preview(reply),
        )

        if options.enable_analytics and self.analytics is not None and self.analytics.enabled:
            await self.analytics.submit(instance_id, message.sender_id, content, reply)

    @staticmethod
    def _strip_group_trigger(
        body: str, message: InboundMessage, handle: ConnectionHandle, prefix: str
    ) -> Optional[str]:
        """Return the body without its mention or prefix, or None if the bot was not addressed."""
        mentioned = bool(handle.own_id) and handle.own_id in message.mentions
        prefixed = bool(prefix) and body.startswith(prefix)
        if not mentioned and not prefixed:
            return None
        if mentioned:
            body = _MENTION_TOKEN.sub("", body, count=1).strip()
        if prefix and body.startswith(prefix):
            body = body[len(prefix):].strip()
        return body.strip()

    async def send_outbound(
        self, instance_id: str, to: Optional[str], text: Optional[str]
    ) -> Dict[str, Any]:
        """Send an API-triggered message and return its id and timestamp."""
        if not self.manager.is_initialized(instance_id):
            if not await self.manager.configs.exists(instance_id):
                raise NotFoundError("Instance not found", detail={"instance_id": instance_id})
            raise UnavailableError(
                f"Messaging client for instance {instance_id} not initialized"
            )
        if not to or not text:
            raise ValidationError("Missing required fields: to and message")

        recipient = sanitize_input(to)
        body = sanitize_input(text)
        if not is_valid_phone_number(recipient):
            raise ValidationError("Invalid phone number format")

        logger.info("webhook_message_sending", instance_id=instance_id, to=recipient)
        sent = await self.manager.send(instance_id, recipient, body)
        return {"success": True, "messageId": sent.id, "timestamp": _now_iso()}
