"""
Communication API Client
Async HTTP client for the communication ledger endpoints
"""
from typing import Callable, List, Optional, Tuple, Union

import httpx
import structlog

from bloodchain.exceptions import (
    AuthorizationError,
    ChainIntegrityError,
    ConflictError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from bloodchain.schemas import ConversationResponse, MessageResponse, VerificationResponse

logger = structlog.get_logger()


TokenSource = Union[str, Callable[[], Optional[str]]]

# (file name, bytes, content type)
AttachmentUpload = Tuple[str, bytes, str]

ERROR_CODES = {
    "validation_error": ValidationError,
    "request_validation_error": ValidationError,
    "authorization_error": AuthorizationError,
    "not_found": NotFoundError,
    "conflict": ConflictError,
}

ERROR_STATUSES = {
    400: ValidationError,
    401: AuthorizationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


class CommunicationClient:
    """
    Client for /communication

    Every request carries the bearer token. 401/403 responses call
    `on_unauthorized` (e.g. to drop a stored session) before raising.
    """

    def __init__(
        self,
        base_url: str,
        token: TokenSource,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
        on_unauthorized: Optional[Callable[[], None]] = None,
    ):
        self._token = token if callable(token) else (lambda: token)
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.on_unauthorized = on_unauthorized

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    async def send_message(
        self,
        receiver_id: str,
        content: str,
        message_type: str = "text",
        sos_id: Optional[str] = None,
        attachments: Optional[List[AttachmentUpload]] = None,
    ) -> MessageResponse:
        """Send a new message"""
        form = {"receiverId": receiver_id, "messageType": message_type, "content": content}
        if sos_id:
            form["sosId"] = sos_id
        files = [("attachments", item) for item in attachments or []]

        data = await self._request("POST", "/communication/send", data=form, files=files or None)
        return MessageResponse.model_validate(data)

    async def get_conversations(self) -> List[ConversationResponse]:
        """All conversations of the current organization"""
        data = await self._request("GET", "/communication/conversations")
        return [ConversationResponse.model_validate(item) for item in data]

    async def get_conversation_messages(self, partner_id: str) -> List[MessageResponse]:
        """Messages exchanged with a specific organization"""
        data = await self._request("GET", f"/communication/conversation/{partner_id}")
        return [MessageResponse.model_validate(item) for item in data]

    async def get_sos_audit_trail(self, sos_id: str, verify: bool = False) -> List[MessageResponse]:
        """SOS-specific audit trail"""
        params = {"verify": "true"} if verify else None
        data = await self._request("GET", f"/communication/sos/{sos_id}/audit", params=params)
        return [MessageResponse.model_validate(item) for item in data]

    async def mark_message_as_read(self, message_id: str) -> MessageResponse:
        data = await self._request("POST", f"/communication/message/{message_id}/read")
        return MessageResponse.model_validate(data)

    async def verify_chain_integrity(self, conversation_id: str) -> VerificationResponse:
        """Verify audit chain integrity"""
        data = await self._request("GET", f"/communication/conversation/{conversation_id}/verify")
        return VerificationResponse.model_validate(data)

    async def get_unread_count(self) -> int:
        data = await self._request("GET", "/communication/unread-count")
        return int(data["count"])

    async def _request(self, method: str, path: str, **kwargs):
        headers = kwargs.pop("headers", {})
        token = self._token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = await self.http.request(method, path, headers=headers, **kwargs)
        if response.is_success:
            return response.json()["data"]

        if response.status_code in (401, 403) and self.on_unauthorized is not None:
            self.on_unauthorized()
        raise self._error_for(response)

    @staticmethod
    def _error_for(response: httpx.Response) -> LedgerError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("detail") or response.reason_phrase or "Request failed"
        if not isinstance(detail, str):
            detail = str(detail)
        code = body.get("code")

        logger.warning("communication_request_failed", status=response.status_code, code=code, path=response.request.url.path)

        if code == "chain_integrity_error":
            return ChainIntegrityError(detail, conversation_id=body.get("conversationId"), broken_at=body.get("brokenAt"))
        error_cls = ERROR_CODES.get(code) or ERROR_STATUSES.get(response.status_code, LedgerError)
        return error_cls(detail)
