"""Signal bot channel backed by signal-cli."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import AsyncIterator

from argenteia.models import InboundMessage

LOGGER = logging.getLogger(__name__)

CONVERSATION_PREFIX = "signal-"


class SignalAdapter:
    """Polls and sends through the signal-cli JSON interface.

    Direct chats are routed back to the sender's number, group chats to the
    group id. Senders outside ``allowed_senders`` are dropped on receipt.
    """

    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
        allowed_senders: frozenset[str],
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._allowed_senders = allowed_senders
        self._numbers_by_uuid: dict[str, str] = {}

    async def poll_messages(self) -> AsyncIterator[InboundMessage]:
        timeout = str(max(int(self._poll_interval_seconds), 1))
        while True:
            returncode, stdout, stderr = await self._cli("-o", "json", "-a", self._account, "receive", "-t", timeout)
            if returncode != 0:
                LOGGER.warning("signal-cli receive exited with %s: %s", returncode, stderr)
                await asyncio.sleep(self._poll_interval_seconds)
                continue
            for inbound in await self.parse_receive_output(stdout):
                yield inbound

    async def parse_receive_output(self, output: str) -> list[InboundMessage]:
        """Turn ``receive`` JSON lines into inbound messages from allowed senders."""

        accepted: list[InboundMessage] = []
        for raw in filter(None, (line.strip() for line in output.splitlines())):
            try:
                inbound = to_inbound_message(json.loads(raw))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                LOGGER.debug("Ignoring unparseable signal-cli line: %.80s", raw)
                continue
            if inbound is None:
                continue

            if not inbound.sender_id.startswith("+"):
                inbound.sender_id = await self.resolve_number(inbound.sender_id)
            if inbound.sender_id not in self._allowed_senders:
                LOGGER.warning("Ignoring Signal message from %s (not in allow-list)", inbound.sender_id)
                continue
            if not inbound.is_group:
                inbound.route_id = inbound.sender_id
                inbound.conversation_id = f"{CONVERSATION_PREFIX}{inbound.sender_id}"
            accepted.append(inbound)
        return accepted

    async def resolve_number(self, uuid: str) -> str:
        """Map a sender UUID to its phone number via ``listContacts``.

        An unknown UUID is returned unchanged, so it never matches the
        number allow-list.
        """
        if uuid in self._numbers_by_uuid:
            return self._numbers_by_uuid[uuid]

        _, stdout, _ = await self._cli("-o", "json", "-a", self._account, "listContacts")
        for raw in stdout.splitlines():
            try:
                contact = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(contact, dict) and contact.get("uuid") and contact.get("number"):
                self._numbers_by_uuid[contact["uuid"]] = contact["number"]

        number = self._numbers_by_uuid.get(uuid)
        if number is None:
            LOGGER.warning("UUID %s not found in contacts", uuid)
            return uuid
        return number

    async def send_message(self, recipient: str, text: str, is_group: bool = False) -> None:
        """Deliver ``text`` as plain text to a number or group id.

        Raises:
            RuntimeError: signal-cli exited with a non-zero status.
        """
        target = ["-g", recipient] if is_group else [recipient]
        returncode, _, stderr = await self._cli("-a", self._account, "send", "-m", to_plain_text(text), *target)
        if returncode != 0:
            raise RuntimeError(f"signal-cli send failed: {stderr}")

    async def _cli(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return process.returncode or 0, stdout.decode(), stderr.decode().strip()


def to_inbound_message(payload: dict[str, object]) -> InboundMessage | None:
    """Normalize one ``receive`` envelope; receipts and empty texts yield None."""

    envelope = payload.get("envelope")
    data = envelope.get("dataMessage") if isinstance(envelope, dict) else None
    if not isinstance(data, dict):
        return None

    body = data.get("message")
    text = body.strip() if isinstance(body, str) else ""
    if not text:
        return None

    sender = str(envelope.get("source") or envelope.get("sourceNumber") or "unknown")
    sent_ms = int(envelope.get("timestamp") or 0)

    group = data.get("groupInfo")
    group_id = group.get("groupId") if isinstance(group, dict) else None
    route_id = group_id if isinstance(group_id, str) else sender

    return InboundMessage(
        conversation_id=f"{CONVERSATION_PREFIX}{route_id}",
        sender_id=sender,
        text=text,
        timestamp=datetime.fromtimestamp(sent_ms / 1000, tz=timezone.utc),
        origin="signal",
        message_id=str(sent_ms) if sent_ms else None,
        is_group=route_id != sender,
        route_id=route_id,
    )


def to_plain_text(text: str) -> str:
    """Strip Markdown that Signal would show literally."""

    text = re.sub(r"```[a-zA-Z0-9_-]*\n?(.*?)```", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"`(.+?)`", r"\1", text)
    text = re.sub(r"\*{1,3}(.+?)\*{1,3}", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"__(.+?)__", r"\1", text, flags=re.DOTALL)
    text = re.sub(r"^#{1,6}\s+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\[(.+?)\]\((.+?)\)", r"\1 (\2)", text)
    return text.strip()
