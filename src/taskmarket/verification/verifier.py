"""External verifiers that observe whether a user met a task condition."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from taskmarket.config import TelegramSettings
from taskmarket.errors import ExternalVerifierError
from taskmarket.verification.models import VerifierOutcome, VerifierResult

logger = logging.getLogger(__name__)

MEMBER_STATUSES = frozenset({"creator", "administrator", "member"})
NON_MEMBER_STATUSES = frozenset({"left", "kicked"})
_TELEGRAM_URL = re.compile(r"^https://t\.me/(?P<path>[^?#]+)")
_NOT_A_MEMBER_ERRORS = ("user not found", "participant_id_invalid", "member not found")


class Verifier(Protocol):
    """Idempotent observation of chat-platform state.

    Transport failures raise ``ExternalVerifierError``; a lookup that ran but
    cannot tell returns ``VerifierOutcome.UNDETERMINED``.
    """

    def check_membership(self, user_id: str, target_ref: str) -> VerifierResult: ...

    def check_reaction(self, user_id: str, target_ref: str) -> VerifierResult: ...


def run_check(
    verifier: Verifier,
    *,
    check_type: str,
    user_id: str,
    target_ref: str,
) -> VerifierResult:
    """Dispatch one check type to the matching verifier lookup."""

    if check_type in {"subscription", "membership"}:
        return verifier.check_membership(user_id, target_ref)
    if check_type == "reaction":
        return verifier.check_reaction(user_id, target_ref)
    return VerifierResult(
        VerifierOutcome.UNDETERMINED,
        {"reason": f"check type {check_type!r} is not observable"},
    )


def chat_ref_from_url(url: str) -> str | None:
    """Map a ``https://t.me/...`` link to a Bot API ``chat_id``.

    ``t.me/name`` and ``t.me/name/123`` give ``@name``; private
    ``t.me/c/<id>/<msg>`` links give ``-100<id>``. Invite links cannot be
    resolved without joining and give ``None``.
    """

    if url.startswith("@"):
        return url
    match = _TELEGRAM_URL.match(url.strip())
    if match is None:
        return None
    parts = [part for part in match.group("path").split("/") if part]
    if not parts:
        return None
    if parts[0] == "c" and len(parts) >= 2 and parts[1].isdigit():  # noqa: PLR2004
        return f"-100{parts[1]}"
    if parts[0].startswith("+") or parts[0] == "joinchat":
        return None
    return f"@{parts[0]}"


class TelegramBotVerifier:
    """Bot API client checking chat membership with ``getChatMember``."""

    def __init__(
        self,
        settings: TelegramSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._token = settings.bot_token
        self._client = httpx.Client(
            base_url=settings.api_base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            transport=transport,
        )

    def check_membership(self, user_id: str, target_ref: str) -> VerifierResult:
        chat_id = chat_ref_from_url(target_ref)
        if chat_id is None:
            return VerifierResult(
                VerifierOutcome.UNDETERMINED,
                {"reason": "target is not a resolvable chat", "target": target_ref},
            )
        payload = self._call("getChatMember", {"chat_id": chat_id, "user_id": user_id})
        if not payload.get("ok"):
            description = str(payload.get("description", ""))
            if any(marker in description.lower() for marker in _NOT_A_MEMBER_ERRORS):
                return VerifierResult(
                    VerifierOutcome.NOT_SATISFIED,
                    {"chat_id": chat_id, "error": description},
                )
            return VerifierResult(
                VerifierOutcome.UNDETERMINED,
                {"chat_id": chat_id, "error": description},
            )

        member = payload.get("result") or {}
        status = str(member.get("status", ""))
        details = {"chat_id": chat_id, "status": status}
        if status in MEMBER_STATUSES or (status == "restricted" and member.get("is_member")):
            return VerifierResult(VerifierOutcome.PASSED, details)
        if status in NON_MEMBER_STATUSES or status == "restricted":
            return VerifierResult(VerifierOutcome.NOT_SATISFIED, details)
        return VerifierResult(VerifierOutcome.UNDETERMINED, details)

    def check_reaction(self, user_id: str, target_ref: str) -> VerifierResult:  # noqa: ARG002
        return VerifierResult(
            VerifierOutcome.UNDETERMINED,
            {"reason": "reactions are not observable through the Bot API"},
        )

    def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self._token:
            raise ExternalVerifierError("Telegram bot token is not configured.")
        try:
            response = self._client.get(f"/bot{self._token}/{method}", params=params)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s", method)
            raise ExternalVerifierError(f"Timeout calling {method}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s: %s", method, exc)
            raise ExternalVerifierError(f"HTTP error calling {method}: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:  # noqa: PLR2004
            raise ExternalVerifierError(f"{method} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalVerifierError(f"{method} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ExternalVerifierError(f"{method} returned an unexpected payload")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TelegramBotVerifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
