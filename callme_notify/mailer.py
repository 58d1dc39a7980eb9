import html as html_mod
import logging
import random
import time

import requests

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

REQUEST_TIMEOUT_SECONDS = 30

HTTP_RETRY_DELAYS_SECONDS = (1, 3, 8)


def _is_retryable_http_status(status_code: int) -> bool:
    return status_code in (408, 425, 429, 500, 502, 503, 504)


def _post_json_with_retries(
    url: str,
    *,
    headers: dict[str, str],
    payload: dict,
    idempotency_key: str | None = None,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
) -> requests.Response:
    request_headers = dict(headers)
    if idempotency_key:
        request_headers["Idempotency-Key"] = idempotency_key

    attempts = len(HTTP_RETRY_DELAYS_SECONDS) + 1
    for attempt in range(attempts):
        try:
            response = requests.post(url, headers=request_headers, json=payload, timeout=timeout)
        except requests.RequestException as exc:
            if attempt < len(HTTP_RETRY_DELAYS_SECONDS):
                base_delay = HTTP_RETRY_DELAYS_SECONDS[attempt]
                delay = base_delay + random.uniform(0, base_delay * 0.25)
                logger.warning("HTTP request failed (%s); retrying in %.1fs [%s/%s]", exc, delay, attempt + 1, attempts)
                time.sleep(delay)
                continue
            raise

        if _is_retryable_http_status(response.status_code) and attempt < len(HTTP_RETRY_DELAYS_SECONDS):
            base_delay = HTTP_RETRY_DELAYS_SECONDS[attempt]
            delay = base_delay + random.uniform(0, base_delay * 0.25)
            logger.warning("HTTP %s retry in %.1fs [%s/%s]", response.status_code, delay, attempt + 1, attempts)
            time.sleep(delay)
            continue

        return response

    raise RuntimeError("Unreachable retry state")


def send_email(
    api_key: str,
    from_email: str,
    to_email: str,
    subject: str,
    text: str,
    html: str,
    *,
    idempotency_key: str | None = None,
) -> None:
    response = _post_json_with_retries(
        RESEND_URL,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        payload={
            "from": from_email,
            "to": [to_email],
            "subject": subject,
            "text": text,
            "html": html,
        },
        idempotency_key=idempotency_key,
    )
    if response.status_code >= 400:
        raise RuntimeError(f"Resend error: {response.status_code} {response.text}")


def friend_request_subject(sender_name: str) -> str:
    return f"{sender_name} wants to be your friend on CallMe"


def render_friend_request_email(recipient_name: str, sender_name: str, app_url: str) -> tuple[str, str]:
    """Return (text, html) bodies for the friend request email."""
    app_url = app_url.rstrip("/")
    text = (
        f"Hey {recipient_name},\n\n"
        f"{sender_name} sent you a friend request on CallMe.\n"
        "Open the app to accept and start seeing when each other is free to talk.\n\n"
        f"Open CallMe: {app_url}\n\n"
        "You received this because someone sent you a friend request.\n"
        f"Privacy Policy: {app_url}/privacy.html"
    )

    safe_recipient = html_mod.escape(recipient_name)
    safe_sender = html_mod.escape(sender_name)
    safe_url = html_mod.escape(app_url)
    html = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>Friend Request on CallMe</title>
</head>
<body style="margin:0;padding:0;background:#FDFBF9;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',sans-serif;">
  <table width="100%" cellpadding="0" cellspacing="0" style="background:#FDFBF9;padding:40px 20px;">
    <tr>
      <td align="center">
        <table width="100%" cellpadding="0" cellspacing="0" style="max-width:480px;">
          <tr>
            <td align="center" style="padding-bottom:28px;">
              <img src="{safe_url}/logo.png" alt="CallMe" width="64" height="64" style="border-radius:18px;display:block;" />
              <p style="margin:10px 0 0;font-size:22px;font-weight:700;color:#1a1a1a;">CallMe</p>
            </td>
          </tr>
          <tr>
            <td style="background:#ffffff;border-radius:22px;padding:36px 32px;border:1px solid #f0ede8;">
              <p style="margin:0 0 6px;font-size:13px;font-weight:600;color:#D46B50;text-transform:uppercase;letter-spacing:1px;">Friend Request</p>
              <h1 style="margin:0 0 16px;font-size:26px;font-weight:700;color:#1a1a1a;line-height:1.2;">{safe_sender} wants to connect</h1>
              <p style="margin:0 0 28px;font-size:16px;color:#6b7280;line-height:1.6;">
                Hey {safe_recipient}, <strong>{safe_sender}</strong> sent you a friend request on CallMe.
                Open the app to accept and start seeing when each other is free to talk.
              </p>
              <table cellpadding="0" cellspacing="0" width="100%">
                <tr>
                  <td align="center">
                    <a href="{safe_url}" style="display:inline-block;background:#D46B50;color:#ffffff;text-decoration:none;font-size:16px;font-weight:600;padding:14px 36px;border-radius:14px;">Open CallMe &rarr;</a>
                  </td>
                </tr>
              </table>
            </td>
          </tr>
          <tr>
            <td align="center" style="padding-top:24px;">
              <p style="margin:0;font-size:12px;color:#9ca3af;">
                &copy; CallMe &nbsp;&middot;&nbsp; <a href="{safe_url}/privacy.html" style="color:#9ca3af;">Privacy Policy</a>
              </p>
              <p style="margin:6px 0 0;font-size:12px;color:#d1d5db;">You received this because someone sent you a friend request.</p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""
    return text, html


def send_friend_request_email(
    api_key: str,
    from_email: str,
    app_url: str,
    *,
    to_email: str,
    recipient_name: str,
    sender_name: str,
    friendship_id,
) -> None:
    text, html = render_friend_request_email(recipient_name, sender_name, app_url)
    send_email(
        api_key,
        from_email,
        to_email,
        friend_request_subject(sender_name),
        text,
        html,
        idempotency_key=f"friend-request-{friendship_id}",
    )
