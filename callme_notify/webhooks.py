"""
HTTP entrypoint for database webhooks and scheduler pings.

Every route answers 200 once the caller is authenticated, including on
invalid payloads and unexpected errors: an error status makes the upstream
webhook retry and amplify load. Failures are logged instead.
"""
import hmac
import logging
import threading
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from callme_notify import __version__
from callme_notify.apns import ApnsClient
from callme_notify.config import Settings, load_settings
from callme_notify.events import ChangeEvent, InvalidEventError, parse_change_event
from callme_notify.expire_availability import expire_stale_availability
from callme_notify.mailer import send_friend_request_email
from callme_notify.notify_availability import handle_availability_change
from callme_notify.notify_friend_request import handle_friend_request
from callme_notify.schedule_matches import run_schedule_match_scan
from callme_notify.store import build_client

logger = logging.getLogger(__name__)


class _Resources:
    """Store and APNs clients, created on first use and shared by requests."""

    def __init__(self, settings: Settings, client=None, apns: ApnsClient | None = None) -> None:
        self.settings = settings
        self._client = client
        self._apns = apns
        self._owns_apns = apns is None
        self._lock = threading.Lock()

    @property
    def client(self):
        with self._lock:
            if self._client is None:
                self._client = build_client(self.settings)
            return self._client

    @property
    def apns(self) -> ApnsClient:
        with self._lock:
            if self._apns is None:
                self._apns = ApnsClient.from_settings(self.settings)
            return self._apns

    def close(self) -> None:
        with self._lock:
            if self._owns_apns and self._apns is not None:
                self._apns.close()
                self._apns = None


async def _read_event(request: Request, route: str) -> ChangeEvent | None:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("%s: request body is not JSON", route)
        return None
    try:
        return parse_change_event(payload)
    except InvalidEventError as exc:
        logger.warning("%s: invalid webhook payload: %s", route, exc)
        return None


async def _run_safely(route: str, fn) -> dict:
    try:
        return await run_in_threadpool(fn)
    except Exception:  # noqa: BLE001
        logger.exception("%s failed", route)
        return {"status": "error"}


def create_app(
    settings: Settings | None = None,
    *,
    client=None,
    apns: ApnsClient | None = None,
    email_sender=send_friend_request_email,
) -> FastAPI:
    settings = settings or load_settings()
    resources = _Resources(settings, client=client, apns=apns)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        resources.close()

    app = FastAPI(title="CallMe notifications", version=__version__, lifespan=lifespan)
    app.state.resources = resources

    def require_secret(authorization: str | None = Header(None)) -> None:
        if not settings.webhook_secret:
            return
        expected = f"Bearer {settings.webhook_secret}"
        if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__}

    @app.post("/notify-availability", dependencies=[Depends(require_secret)])
    async def notify_availability(request: Request) -> dict:
        event = await _read_event(request, "notify-availability")
        if event is None:
            return {"status": "invalid"}
        return await _run_safely(
            "notify-availability",
            lambda: handle_availability_change(
                event,
                client=resources.client,
                settings=settings,
                apns=resources.apns,
            ),
        )

    @app.post("/notify-friend-request", dependencies=[Depends(require_secret)])
    async def notify_friend_request(request: Request) -> dict:
        event = await _read_event(request, "notify-friend-request")
        if event is None:
            return {"status": "invalid"}
        return await _run_safely(
            "notify-friend-request",
            lambda: handle_friend_request(
                event,
                client=resources.client,
                settings=settings,
                apns=resources.apns,
                email_sender=email_sender,
            ),
        )

    @app.post("/notify-schedule-matches", dependencies=[Depends(require_secret)])
    async def notify_schedule_matches() -> dict:
        return await _run_safely(
            "notify-schedule-matches",
            lambda: run_schedule_match_scan(
                client=resources.client,
                settings=settings,
                apns=resources.apns,
            ),
        )

    @app.post("/expire-availability", dependencies=[Depends(require_secret)])
    async def expire_availability() -> dict:
        return await _run_safely(
            "expire-availability",
            lambda: {"status": "ok", "expired": expire_stale_availability(client=resources.client)},
        )

    return app
