"""
Apple Push Notification service delivery.

Provider tokens are signed by hand (ES256 over base64url JSON segments) with
the .p8 key from APNS_KEY_P8. Deliveries go over HTTP/2 with httpx; results
are classified so callers can prune dead device tokens. Transient failures
(429, 5xx, network errors) get one bounded retry.
"""
import base64
import binascii
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from callme_notify.config import Settings
from callme_notify.store import fetch_all_rows, id_batches, short_token

logger = logging.getLogger(__name__)

APNS_SANDBOX_HOST = "api.sandbox.push.apple.com"
APNS_PRODUCTION_HOST = "api.push.apple.com"

# Reasons meaning the token will never work again for this topic
DEAD_TOKEN_REASONS = frozenset({"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"})

EXPIRATION_SECONDS = 3600

MAX_COLLAPSE_ID_BYTES = 64

MAX_CONCURRENT_DELIVERIES = 16

_PEM_BLOCK = re.compile(r"-----BEGIN ([A-Z ]+)-----(.*?)-----END \1-----", re.S)


class ApnsConfigError(RuntimeError):
    """Signing key material or ids are missing or unusable."""


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    DEAD_TOKEN = "dead_token"
    TRANSIENT_FAILURE = "transient_failure"
    REJECTED = "rejected"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _json_segment(value: dict) -> str:
    return _b64url(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def normalize_private_key(raw: str) -> str:
    """Return a well-formed PEM from whatever shape the secret store produced.

    Accepts a plain PEM, a PEM flattened onto one line with literal ``\\n`` or
    ``|`` separators, or the whole PEM base64-encoded.
    """
    text = (raw or "").strip()
    if not text:
        raise ApnsConfigError("APNS_KEY_P8 is not set")
    if "-----BEGIN" not in text:
        try:
            text = base64.b64decode(text, validate=False).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ApnsConfigError("APNS_KEY_P8 is neither PEM nor base64-encoded PEM") from exc
    match = _PEM_BLOCK.search(text)
    if not match:
        raise ApnsConfigError("APNS_KEY_P8 does not contain a PEM block")
    label = match.group(1)
    body = re.sub(r"\\n|[\s|]", "", match.group(2))
    wrapped = "\n".join(body[i:i + 64] for i in range(0, len(body), 64))
    return f"-----BEGIN {label}-----\n{wrapped}\n-----END {label}-----\n"


def load_signing_key(private_key_pem: str) -> ec.EllipticCurvePrivateKey:
    pem = normalize_private_key(private_key_pem)
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ApnsConfigError(f"APNs private key could not be loaded: {exc}") from exc
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise ApnsConfigError("APNs private key must be a P-256 EC key")
    return key


def sign_provider_token(
    private_key_pem: str,
    key_id: str,
    team_id: str,
    *,
    issued_at: float | None = None,
) -> str:
    if not key_id or not team_id:
        raise ApnsConfigError("APNS_KEY_ID and APNS_TEAM_ID are required to sign a provider token")
    key = load_signing_key(private_key_pem)
    iat = int(time.time() if issued_at is None else issued_at)
    signing_input = (
        f"{_json_segment({'alg': 'ES256', 'kid': key_id})}"
        f".{_json_segment({'iss': team_id, 'iat': iat})}"
    )
    der_signature = key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
    # JWS wants the raw fixed-width r || s pair, not DER
    r, s = decode_dss_signature(der_signature)
    raw_signature = r.to_bytes(32, "big") + s.to_bytes(32, "big")
    return f"{signing_input}.{_b64url(raw_signature)}"


def provider_token_for(settings: Settings) -> str:
    return sign_provider_token(
        settings.apns_private_key,
        settings.apns_key_id,
        settings.apns_team_id,
    )


def build_payload(title: str, body: str, deep_link: str) -> dict:
    return {
        "aps": {
            "alert": {"title": title, "body": body},
            "sound": "default",
            "badge": 1,
        },
        "deepLink": deep_link,
    }


def _clip_collapse_id(collapse_id: str) -> str:
    encoded = collapse_id.encode("utf-8")
    if len(encoded) <= MAX_COLLAPSE_ID_BYTES:
        return collapse_id
    return encoded[:MAX_COLLAPSE_ID_BYTES].decode("utf-8", errors="ignore")


def _response_reason(response: httpx.Response) -> str:
    try:
        parsed = response.json()
    except ValueError:
        return ""
    if isinstance(parsed, dict):
        return str(parsed.get("reason") or "")
    return ""


class ApnsClient:
    def __init__(
        self,
        topic: str,
        *,
        production: bool = False,
        http_client: httpx.Client | None = None,
        timeout: float = 10.0,
        max_retries: int = 1,
        retry_delay: float = 1.0,
        sleep=time.sleep,
        clock=time.time,
    ) -> None:
        self.topic = topic
        self.production = production
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(http2=True, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ApnsClient":
        return cls(settings.apns_bundle_id, production=settings.apns_production, **kwargs)

    @property
    def base_url(self) -> str:
        host = APNS_PRODUCTION_HOST if self.production else APNS_SANDBOX_HOST
        return f"https://{host}"

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "ApnsClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def build_headers(self, auth_token: str, collapse_id: str) -> dict[str, str]:
        return {
            "authorization": f"bearer {auth_token}",
            "apns-topic": self.topic,
            "apns-push-type": "alert",
            "apns-priority": "10",
            # Offline devices still get it on reconnect within the hour
            "apns-expiration": str(int(self._clock()) + EXPIRATION_SECONDS),
            "apns-collapse-id": _clip_collapse_id(collapse_id),
            "content-type": "application/json",
        }

    def deliver(
        self,
        device_token: str,
        title: str,
        body: str,
        deep_link: str,
        collapse_id: str,
        auth_token: str,
    ) -> DeliveryResult:
        url = f"{self.base_url}/3/device/{device_token}"
        headers = self.build_headers(auth_token, collapse_id)
        payload = build_payload(title, body, deep_link)
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            result, detail = self._attempt(url, headers, payload, device_token)
            if result is not None:
                return result
            if attempt < self.max_retries:
                logger.warning(
                    "APNs transient error %s for %s, retrying in %ss [%s/%s]",
                    detail,
                    short_token(device_token),
                    self.retry_delay,
                    attempt + 1,
                    attempts,
                )
                self._sleep(self.retry_delay)

        logger.error(
            "APNs transient error for %s persisted after %s attempts; dropping push",
            short_token(device_token),
            attempts,
        )
        return DeliveryResult.TRANSIENT_FAILURE

    def _attempt(self, url: str, headers: dict, payload: dict, device_token: str):
        """One POST. Returns (result, detail); result is None when transient."""
        try:
            response = self._http.post(url, headers=headers, json=payload)
        except httpx.TransportError as exc:
            return None, type(exc).__name__

        if 200 <= response.status_code < 300:
            return DeliveryResult.DELIVERED, ""

        reason = _response_reason(response)
        if reason in DEAD_TOKEN_REASONS or response.status_code == 410:
            logger.warning(
                "APNs dead token %s: %s %s; will delete",
                short_token(device_token),
                response.status_code,
                reason,
            )
            return DeliveryResult.DEAD_TOKEN, reason

        if response.status_code == 429 or response.status_code >= 500:
            return None, str(response.status_code)

        logger.error(
            "APNs rejected push for %s: %s %s",
            short_token(device_token),
            response.status_code,
            reason or response.text,
        )
        return DeliveryResult.REJECTED, reason


@dataclass(frozen=True)
class PushMessage:
    token: str
    title: str
    body: str
    deep_link: str
    collapse_id: str


@dataclass
class BatchReport:
    delivered: int = 0
    failed: int = 0
    dead_tokens: list[str] = field(default_factory=list)


def send_batch(
    apns: ApnsClient,
    messages: list[PushMessage],
    auth_token: str,
    *,
    max_workers: int = MAX_CONCURRENT_DELIVERIES,
) -> BatchReport:
    """Deliver every message concurrently and wait for all of them to settle."""
    report = BatchReport()
    if not messages:
        return report

    workers = max(1, min(max_workers, len(messages)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apns") as executor:
        futures = {
            executor.submit(
                apns.deliver,
                message.token,
                message.title,
                message.body,
                message.deep_link,
                message.collapse_id,
                auth_token,
            ): message
            for message in messages
        }
        for future in as_completed(futures):
            message = futures[future]
            try:
                result = future.result()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "APNs delivery to %s raised: %s",
                    short_token(message.token),
                    exc,
                    exc_info=True,
                )
                report.failed += 1
                continue
            if result is DeliveryResult.DELIVERED:
                report.delivered += 1
            elif result is DeliveryResult.DEAD_TOKEN:
                if message.token not in report.dead_tokens:
                    report.dead_tokens.append(message.token)
            else:
                report.failed += 1
    return report


def load_push_tokens(client, user_ids) -> dict[str, list[str]]:
    """Map user id -> distinct device tokens for the given users."""
    rows: list[dict] = []
    for batch in id_batches(user_ids):
        rows.extend(
            fetch_all_rows(
                client.table("push_tokens")
                .select("user_id,token")
                .in_("user_id", batch)
                .order("user_id")
                .order("token")
            )
        )
    tokens: dict[str, list[str]] = {}
    for row in rows:
        token = str(row.get("token") or "").strip()
        if not token:
            continue
        bucket = tokens.setdefault(str(row["user_id"]), [])
        if token not in bucket:
            bucket.append(token)
    return tokens


def prune_dead_tokens(client, tokens: list[str]) -> int:
    unique = list(dict.fromkeys(token for token in tokens if token))
    if not unique:
        return 0
    client.table("push_tokens").delete().in_("token", unique).execute()
    logger.info("Deleted %s dead push token(s)", len(unique))
    return len(unique)


def fan_out(client, settings: Settings, apns: ApnsClient, messages: list[PushMessage]) -> BatchReport:
    """Sign one provider token, send everything, then prune dead tokens."""
    if not messages:
        return BatchReport()
    auth_token = provider_token_for(settings)
    report = send_batch(apns, messages, auth_token)
    prune_dead_tokens(client, report.dead_tokens)
    return report
