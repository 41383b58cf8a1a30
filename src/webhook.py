"""
Webhook Ingestor - authenticates inbound channel callbacks and applies them.

Provides a FastAPI app with a single POST route for channel callbacks and
a readiness endpoint. Callbacks are signed with HMAC-SHA256 over
``{version}:{timestamp}:{body}`` using a shared secret; stale timestamps
are rejected to prevent replay.
"""

import asyncio
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from errors import (
    AuthenticationError,
    DecodeError,
    TransientDependencyError,
)
from plugins.base import Callback
from plugins.channels.base import NotificationChannel
from reconciler import CallbackOutcome, Reconciler

logger = logging.getLogger(__name__)

OUTCOME_STATUS = {
    CallbackOutcome.SUCCESS: 200,
    CallbackOutcome.NOT_ACTIONABLE: 401,
    CallbackOutcome.STALE: 409,
    CallbackOutcome.CONFLICT: 409,
}


class CallbackResponse(BaseModel):
    """Response body for callback requests."""

    status: str
    request_id: Optional[str] = None
    http_id: str


class HealthResponse(BaseModel):
    """Response body for the readiness endpoint."""

    status: str
    service: str = "access-relay"


class RequestLogger(logging.LoggerAdapter):
    """Prefixes messages with the per-call correlation ID."""

    def process(self, msg, kwargs):
        return f"[http_id={self.extra['http_id']}] {msg}", kwargs


@dataclass
class WebhookVerifier:
    """Verifies signed callbacks against a shared secret."""

    secret: str = field(repr=False)
    version: str = "v0"
    replay_window: float = 300.0
    timestamp_header: str = "X-Slack-Request-Timestamp"
    signature_header: str = "X-Slack-Signature"
    clock: Callable[[], float] = time.time

    def sign(self, body: bytes, timestamp: str) -> str:
        """Compute the ``{version}={hexdigest}`` signature for a body."""
        message = f"{self.version}:{timestamp}:".encode() + body
        digest = hmac.new(self.secret.encode(), message, hashlib.sha256).hexdigest()
        return f"{self.version}={digest}"

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        """
        Check the signature and timestamp headers of a raw callback.

        Raises:
            AuthenticationError: If a header is missing, the timestamp is
                outside the replay window, or the signature doesn't match.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        timestamp = lowered.get(self.timestamp_header.lower(), "")
        signature = lowered.get(self.signature_header.lower(), "")
        if not timestamp or not signature:
            raise AuthenticationError("Missing signature headers")

        try:
            sent_at = int(timestamp)
        except ValueError:
            raise AuthenticationError(f"Invalid signature timestamp: {timestamp!r}")

        if abs(self.clock() - sent_at) > self.replay_window:
            raise AuthenticationError(f"Signature timestamp {sent_at} out of window")

        expected = self.sign(body, timestamp)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            raise AuthenticationError("Signature mismatch")

    async def verify_callback(
        self,
        body: bytes,
        headers: Mapping[str, str],
        channel: NotificationChannel,
    ) -> Optional[Callback]:
        """
        Verify a raw callback and decode it with the channel's decoder.

        Returns None when the channel finds nothing to apply.

        Raises:
            AuthenticationError: If verification fails.
            DecodeError: If the verified payload is malformed.
        """
        self.verify(body, headers)
        content_type = {k.lower(): v for k, v in headers.items()}.get(
            "content-type", ""
        )
        return await channel.decode_callback(body, content_type)


class WebhookServer:
    """
    HTTP endpoint for channel callbacks.

    Every call is answered with a definitive status code: 200 applied or
    nothing to apply, 400 undecodable, 401 unauthenticated or not
    actionable, 409 already resolved or refused by the authority, 503
    dependency slow or unreachable, 500 anything else.
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        channel: NotificationChannel,
        reconciler: Reconciler,
        readiness: Optional[Callable[[], bool]] = None,
        host: str = "0.0.0.0",
        port: int = 8081,
        callback_timeout: float = 2.5,
    ):
        self.verifier = verifier
        self.channel = channel
        self.reconciler = reconciler
        self.readiness = readiness or (lambda: True)
        self.host = host
        self.port = port
        self.callback_timeout = callback_timeout
        self.server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="Access Relay",
            description="Callback endpoint for access request notifications",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up the FastAPI routes.

        - Callbacks: POST /
        - Readiness: GET /health
        """

        @self.app.get("/health", response_model=HealthResponse)
        async def health():
            """Readiness endpoint; ready once the watcher is primed."""
            if not self.readiness():
                return JSONResponse(
                    status_code=503,
                    content=HealthResponse(status="starting").model_dump(),
                )
            return HealthResponse(status="ok")

        @self.app.post("/", response_model=CallbackResponse)
        async def callback(request: Request):
            """Receive a signed channel callback."""
            body = await request.body()
            status, payload = await self.process(body, request.headers)
            return JSONResponse(status_code=status, content=payload)

    async def process(
        self, body: bytes, headers: Mapping[str, str]
    ) -> Tuple[int, Dict[str, Any]]:
        """Verify, decode and apply one callback, returning (status, body)."""
        http_id = uuid.uuid4().hex
        log = RequestLogger(logger, {"http_id": http_id})
        decoded: Dict[str, Callback] = {}

        def respond(status: int, label: str):
            callback = decoded.get("callback")
            payload = CallbackResponse(
                status=label,
                request_id=callback.request_id if callback else None,
                http_id=http_id,
            )
            return status, payload.model_dump()

        async def apply() -> Optional[CallbackOutcome]:
            callback = await self.verifier.verify_callback(body, headers, self.channel)
            if callback is None:
                return None
            decoded["callback"] = callback
            log.info(
                f"Callback {callback.action.value} for request "
                f"{callback.request_id} from {callback.actor or 'unknown'}"
            )
            return await self.reconciler.handle_callback(callback, log)

        # The deadline covers decoding, which may call the provider's API
        try:
            outcome = await asyncio.wait_for(apply(), timeout=self.callback_timeout)
        except AuthenticationError as e:
            log.warning(f"Rejected callback: {e}")
            return respond(401, "unauthorized")
        except DecodeError as e:
            log.warning(f"Undecodable callback: {e}")
            return respond(400, "bad_request")
        except (asyncio.TimeoutError, TransientDependencyError) as e:
            log.error(f"Callback not applied: {e!r}")
            return respond(503, "unavailable")
        except Exception as e:
            log.error(f"Failed to process callback: {e}", exc_info=True)
            return respond(500, "error")

        if outcome is None:
            log.debug("Callback carried nothing to apply")
            return respond(200, "ignored")
        return respond(OUTCOME_STATUS[outcome], outcome.value)

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting webhook server on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop accepting requests and shut the server down."""
        logger.info("Stopping webhook server")
        if self.server:
            self.server.should_exit = True

