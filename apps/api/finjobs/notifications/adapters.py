"""Channel delivery adapters.

Each channel gets one adapter, chosen at startup: a ``ProviderAdapter``
when the provider is configured, else a ``SimulatedAdapter``. Adapters
always return a ``DeliveryOutcome``; provider errors never escape.

- Email goes over SMTP.
- SMS goes through the Twilio REST API.
- Push goes through an HTTP push gateway.

A provider transport failure (connection error, timeout, 5xx) degrades to
a simulated delivery that records the original error. A permanent
provider rejection is a failed delivery with no fallback.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, replace
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Optional, Union

import httpx
import phonenumbers

from finjobs.core.config import Settings

logger = logging.getLogger(__name__)

UNREGISTERED_TOKEN_CODES = {"UNREGISTERED", "registration-token-not-registered", "NotRegistered"}


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt."""

    status: str  # sent, failed or simulated
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    invalid_destination: bool = False


class ProviderTransportError(Exception):
    """The provider could not be reached or answered with a server error."""


class ProviderRejected(Exception):
    """The provider refused the message; retrying will not help."""

    def __init__(self, message: str, invalid_destination: bool = False):
        self.invalid_destination = invalid_destination
        super().__init__(message)


class SimulatedAdapter:
    """Logs the attempt instead of contacting a provider."""

    def __init__(self, channel: str):
        self.channel = channel
        self.is_simulated = True

    def deliver(
        self,
        address: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> DeliveryOutcome:
        logger.info(f"[SIMULATED] {self.channel} to {address}: {title}")
        return DeliveryOutcome(status="simulated")


class ProviderAdapter:
    """Delivers through ``provider``, degrading to ``simulator`` on transport errors."""

    def __init__(self, channel: str, provider, simulator: Optional[SimulatedAdapter] = None):
        self.channel = channel
        self.provider = provider
        self.simulator = simulator or SimulatedAdapter(channel)
        self.is_simulated = False

    def deliver(
        self,
        address: str,
        title: str,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> DeliveryOutcome:
        try:
            message_id = self.provider.send(address, title, message, data or {})
        except ProviderRejected as e:
            logger.warning(f"{self.channel} provider rejected message to {address}: {e}")
            return DeliveryOutcome(
                status="failed", error=str(e), invalid_destination=e.invalid_destination
            )
        except ProviderTransportError as e:
            logger.warning(
                f"{self.channel} provider unavailable, simulating delivery to {address}: {e}"
            )
            outcome = self.simulator.deliver(address, title, message, data)
            return replace(outcome, error=str(e))
        return DeliveryOutcome(status="sent", provider_message_id=message_id)


Adapter = Union[ProviderAdapter, SimulatedAdapter]


class SmtpEmailProvider:
    """Sends plain-text email with an optional HTML part over SMTP."""

    def __init__(
        self,
        host: str,
        port: int,
        from_email: str,
        from_name: str = "",
        user: str = "",
        password: str = "",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.from_email = from_email
        self.from_name = from_name
        self.user = user
        self.password = password
        self.timeout = timeout

    def build_message(
        self, to_email: str, subject: str, body: str, html_body: Optional[str] = None
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email
        msg["To"] = to_email
        msg.attach(MIMEText(body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(self, address: str, title: str, message: str, data: dict[str, Any]) -> Optional[str]:
        msg = self.build_message(address, title, message, data.get("html_body"))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise ProviderRejected(f"Recipient refused: {address}", invalid_destination=True) from e
        except smtplib.SMTPResponseException as e:
            if 500 <= e.smtp_code < 600:
                raise ProviderRejected(f"SMTP {e.smtp_code}: {e.smtp_error!r}") from e
            raise ProviderTransportError(f"SMTP {e.smtp_code}: {e.smtp_error!r}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise ProviderTransportError(f"SMTP error: {e}") from e
        logger.info(f"Email sent to {address}: {title}")
        return msg.get("Message-ID")


def _raise_for_response(response: httpx.Response, invalid_statuses: tuple[int, ...] = ()) -> None:
    if response.status_code >= 500:
        raise ProviderTransportError(f"Provider returned {response.status_code}")
    if response.status_code >= 400:
        raise ProviderRejected(
            f"Provider returned {response.status_code}: {response.text[:200]}",
            invalid_destination=response.status_code in invalid_statuses,
        )


class TwilioSmsProvider:
    """Sends SMS through the Twilio Messages API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        default_region: str = "US",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.default_region = default_region
        self.timeout = timeout
        self.client = client

    def normalize(self, number: str) -> str:
        """Return ``number`` in E.164 form or raise ProviderRejected."""
        try:
            parsed = phonenumbers.parse(number, self.default_region)
        except phonenumbers.NumberParseException as e:
            raise ProviderRejected(f"Invalid phone number: {number}", invalid_destination=True) from e
        if not phonenumbers.is_valid_number(parsed):
            raise ProviderRejected(f"Invalid phone number: {number}", invalid_destination=True)
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)

    def send(self, address: str, title: str, message: str, data: dict[str, Any]) -> Optional[str]:
        to_number = self.normalize(address)
        url = f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        body = f"{title}: {message}" if title else message
        form = {"To": to_number, "From": self.from_number, "Body": body[:1600]}
        try:
            if self.client is not None:
                response = self.client.post(url, data=form, auth=(self.account_sid, self.auth_token))
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, data=form, auth=(self.account_sid, self.auth_token))
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise ProviderTransportError(f"Twilio request failed: {e}") from e
        # 21211 and friends come back as 400 for bad destinations
        _raise_for_response(response, invalid_statuses=(400,))
        sid = response.json().get("sid")
        logger.info(f"SMS sent to {to_number} (sid={sid})")
        return sid


class PushGatewayProvider:
    """Sends push notifications through an HTTP push gateway.

    The gateway answers 404/410, or an ``UNREGISTERED`` error code, for
    tokens that are no longer valid.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.client = client

    def send(self, address: str, title: str, message: str, data: dict[str, Any]) -> Optional[str]:
        payload = {
            "token": address,
            "notification": {"title": title, "body": message},
            "data": {k: str(v) for k, v in data.items()},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            if self.client is not None:
                response = self.client.post(self.url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise ProviderTransportError(f"Push gateway request failed: {e}") from e

        if response.status_code < 500 and self._is_unregistered(response):
            raise ProviderRejected("Push token is not registered", invalid_destination=True)
        _raise_for_response(response, invalid_statuses=(404, 410))
        body = self._json(response)
        return body.get("message_id") or body.get("id") or body.get("name")

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _is_unregistered(self, response: httpx.Response) -> bool:
        if response.status_code in (404, 410):
            return True
        error = self._json(response).get("error")
        if isinstance(error, dict):
            code = error.get("code") or error.get("status")
        else:
            code = error
        return code in UNREGISTERED_TOKEN_CODES


def build_adapters(settings: Settings) -> dict[str, Adapter]:
    """Select one adapter per queued channel from ``settings``."""
    adapters: dict[str, Adapter] = {}

    if settings.smtp_host:
        adapters["email"] = ProviderAdapter(
            "email",
            SmtpEmailProvider(
                host=settings.smtp_host,
                port=settings.smtp_port,
                from_email=settings.smtp_from_email,
                from_name=settings.smtp_from_name,
                user=settings.smtp_user,
                password=settings.smtp_password,
                timeout=settings.smtp_timeout_seconds,
            ),
        )
    else:
        adapters["email"] = SimulatedAdapter("email")

    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number:
        adapters["sms"] = ProviderAdapter(
            "sms",
            TwilioSmsProvider(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                base_url=settings.twilio_api_base_url,
                default_region=settings.sms_default_region,
                timeout=settings.provider_timeout_seconds,
            ),
        )
    else:
        adapters["sms"] = SimulatedAdapter("sms")

    if settings.push_gateway_url:
        adapters["push"] = ProviderAdapter(
            "push",
            PushGatewayProvider(
                url=settings.push_gateway_url,
                api_key=settings.push_gateway_key,
                timeout=settings.provider_timeout_seconds,
            ),
        )
    else:
        adapters["push"] = SimulatedAdapter("push")

    for channel, adapter in adapters.items():
        mode = "simulated" if adapter.is_simulated else "provider"
        logger.info(f"Delivery adapter for {channel}: {mode}")
    return adapters
