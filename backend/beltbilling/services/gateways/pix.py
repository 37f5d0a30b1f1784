"""PIX Automático adapter (Efí Bank).

Recurrences live under ``/v2/rec``. The payer authorizes a recurrence in their
banking app (status CRIADA -> APROVADA); afterwards every debit arrives as a
``pix`` webhook item and every authorization change as a ``rec`` object.
"""
import hmac
import json
import logging
import ssl
import threading
import time
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as SchemaValidationError

from beltbilling.core.config import GATEWAY_PIX
from beltbilling.core.errors import (
    NotFoundError, PayloadError, RecurrenceDeclinedError, ServerError,
    TransportError, ValidationError, WaitCancelledError, error_for_status
)
from beltbilling.models.enums import EventType
from beltbilling.schemas.payments import (
    Charge, ChargeState, ChargeStatus, NormalizedEvent, RecurrenceRequest
)
from beltbilling.services.credential_cache import (
    DEFAULT_REFRESH_LEAD, CredentialCache, OAuth2ClientCredentials
)
from beltbilling.services.gateways.base import GatewayAdapter, hmac_sha256_hex

logger = logging.getLogger(__name__)

# Recurrence statuses reported by the provider
REC_CREATED = "CRIADA"
REC_APPROVED = "APROVADA"
REC_REJECTED = "REJEITADA"
REC_CANCELED = "CANCELADA"
REC_EXPIRED = "EXPIRADA"

_REC_STATE = {
    REC_CREATED: ChargeState.PENDING,
    REC_APPROVED: ChargeState.AUTHORIZED,
    REC_REJECTED: ChargeState.REJECTED,
    REC_CANCELED: ChargeState.CANCELED,
    REC_EXPIRED: ChargeState.EXPIRED,
}

_REC_EVENT = {
    REC_APPROVED: EventType.RECURRENCE_AUTHORIZED,
    REC_REJECTED: EventType.RECURRENCE_REJECTED,
    REC_CANCELED: EventType.RECURRENCE_CANCELED,
    REC_EXPIRED: EventType.RECURRENCE_EXPIRED,
}


def build_http_client(
    timeout: float,
    cert_path: Optional[str] = None,
    key_path: Optional[str] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """httpx client for the PIX API, presenting a client certificate when configured"""
    kwargs: Dict[str, Any] = {"timeout": timeout}
    if cert_path:
        context = ssl.create_default_context()
        context.load_cert_chain(cert_path, key_path or None)
        kwargs["verify"] = context
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.Client(**kwargs)


def cents_to_amount(cents: int) -> str:
    """1990 -> '19.90'"""
    return f"{Decimal(cents) / 100:.2f}"


def amount_to_cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except InvalidOperation as e:
        raise PayloadError(f"Invalid amount: {value!r}") from e


def _digits(value: Optional[str]) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def _efi_timestamp(value: datetime) -> str:
    """UTC timestamp in the format the list endpoints take as inicio/fim"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class PixAdapter(GatewayAdapter):
    gateway = GATEWAY_PIX
    signature_header = "X-Signature"

    def __init__(
        self,
        cache: CredentialCache,
        *,
        base_url: str,
        client_id: str,
        client_secret: str,
        pix_key: str = "",
        webhook_secret: str = "",
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        cert_path: Optional[str] = None,
        key_path: Optional[str] = None,
        refresh_lead: float = DEFAULT_REFRESH_LEAD,
    ):
        super().__init__(cache)
        self.base_url = base_url.rstrip("/")
        self.pix_key = pix_key
        self._webhook_secret = webhook_secret
        self._http = http_client or build_http_client(timeout, cert_path, key_path)
        cache.register(
            self.gateway,
            OAuth2ClientCredentials(
                self.base_url, client_id, client_secret,
                gateway=self.gateway, http_client=self._http,
            ),
            refresh_lead,
        )

    # ========================================================================
    # HTTP
    # ========================================================================

    def _request(
        self, method: str, path: str, payload: Optional[dict] = None, params: Optional[dict] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"

        def send(token: str) -> Dict[str, Any]:
            try:
                response = self._http.request(
                    method, url, json=payload, params=params,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.RequestError as e:
                raise TransportError(f"{method} {path} failed: {e}", gateway=self.gateway) from e

            if response.status_code >= 400:
                raise self._error_from_response(response)
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ServerError(f"{method} {path} returned invalid JSON", gateway=self.gateway,
                                  status_code=response.status_code) from e

        return self._call_authenticated(f"{method} {path}", send)

    def _error_from_response(self, response: httpx.Response):
        code = None
        message = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("nome") or body.get("code") or body.get("type")
            message = body.get("mensagem") or body.get("message") or body.get("detail") or body.get("title")
        if not message:
            message = response.text[:200] or response.reason_phrase or "Request failed"
        return error_for_status(response.status_code, message, gateway=self.gateway, code=code)

    # ========================================================================
    # RECURRENCES
    # ========================================================================

    @property
    def signature_required(self) -> bool:
        return bool(self._webhook_secret)

    def create_recurring_charge(self, req: RecurrenceRequest) -> Charge:
        """Create a PIX Automático recurrence for the payer to authorize.

        The authorization artifact is the copy-and-paste code when the provider
        returns one, otherwise the location URL.

        Raises:
            ValidationError: payer tax id missing or malformed (no call is made)
        """
        tax_id = _digits(req.payer.tax_id)
        if len(tax_id) not in (11, 14):
            raise ValidationError("Payer CPF (11 digits) or CNPJ (14 digits) is required", gateway=self.gateway)
        if not req.payer.name:
            raise ValidationError("Payer name is required", gateway=self.gateway)

        debtor: Dict[str, Any] = {"nome": req.payer.name}
        debtor["cpf" if len(tax_id) == 11 else "cnpj"] = tax_id
        if req.payer.email:
            debtor["email"] = req.payer.email

        payload: Dict[str, Any] = {
            "contrato": str(req.subscription_id),
            "devedor": debtor,
            "objeto": req.description or f"Assinatura {req.subscription_id}",
            "dataInicial": (req.start_date or date.today()).isoformat(),
            "periodicidade": req.periodicity.value,
            "valorRec": cents_to_amount(req.amount_cents),
        }
        if req.end_date:
            payload["dataFinal"] = req.end_date.isoformat()
        if req.description:
            payload["descricao"] = req.description
        if req.due_day:
            payload["diaVencimento"] = req.due_day

        data = self._request("POST", "/v2/rec", payload)
        rec_id = data.get("idRec")
        if not rec_id:
            raise ServerError("Recurrence response missing idRec", gateway=self.gateway)

        provider_status = data.get("status") or REC_CREATED
        logger.info(f"Created PIX recurrence {rec_id} for subscription {req.subscription_id}")
        return Charge(
            charge_id=rec_id,
            status=_REC_STATE.get(provider_status, ChargeState.PENDING),
            provider_status=provider_status,
            authorization_artifact=data.get("pixCopiaECola") or data.get("location"),
            raw=data,
        )

    def get_recurrence(self, recurrence_id: str) -> Dict[str, Any]:
        if not recurrence_id:
            raise ValidationError("Recurrence id is required", gateway=self.gateway)
        return self._request("GET", f"/v2/rec/{recurrence_id}")

    def get_charge_status(self, charge_id: str) -> ChargeStatus:
        data = self.get_recurrence(charge_id)
        provider_status = data.get("status")
        return ChargeStatus(
            charge_id=charge_id,
            status=_REC_STATE.get(provider_status, ChargeState.PENDING),
            provider_status=provider_status,
            reason=data.get("motivo"),
            raw=data,
        )

    def cancel_recurrence(self, recurrence_id: str) -> None:
        if not recurrence_id:
            raise ValidationError("Recurrence id is required", gateway=self.gateway)
        self._request("PATCH", f"/v2/rec/{recurrence_id}", {"status": REC_CANCELED})
        logger.info(f"Canceled PIX recurrence {recurrence_id}")

    def update_recurrence(
        self,
        recurrence_id: str,
        amount_cents: Optional[int] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Change the debit amount and/or final date of a recurrence (plan change)"""
        if not recurrence_id:
            raise ValidationError("Recurrence id is required", gateway=self.gateway)
        payload: Dict[str, Any] = {}
        if amount_cents is not None:
            if amount_cents <= 0:
                raise ValidationError("Recurrence amount must be positive", gateway=self.gateway)
            payload["valorRec"] = cents_to_amount(amount_cents)
        if end_date is not None:
            payload["dataFinal"] = end_date.isoformat()
        if not payload:
            raise ValidationError("Nothing to update on the recurrence", gateway=self.gateway)

        data = self._request("PATCH", f"/v2/rec/{recurrence_id}", payload)
        logger.info(f"Updated PIX recurrence {recurrence_id}: {', '.join(sorted(payload))}")
        return data

    def list_recurrences(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Recurrences created between ``start`` and ``end``"""
        data = self._request("GET", "/v2/rec", params={"inicio": _efi_timestamp(start), "fim": _efi_timestamp(end)})
        return data.get("recorrencias") or []

    def get_recurrence_payments(self, recurrence_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/v2/rec/{recurrence_id}/pix")
        return data.get("pix") or []

    def refund_pix(self, end_to_end_id: str, amount_cents: int, refund_id: Optional[str] = None) -> Dict[str, Any]:
        """Return (part of) a received PIX to the payer.

        ``refund_id`` identifies the refund at the provider; repeating a call
        with the same id does not refund twice.
        """
        if not end_to_end_id:
            raise ValidationError("endToEndId is required", gateway=self.gateway)
        if amount_cents <= 0:
            raise ValidationError("Refund amount must be positive", gateway=self.gateway)
        refund_id = refund_id or f"dev{time.time_ns()}"
        data = self._request(
            "PUT", f"/v2/pix/{end_to_end_id}/devolucao/{refund_id}", {"valor": cents_to_amount(amount_cents)},
        )
        logger.info(f"Requested refund {refund_id} of {amount_cents} cents for PIX {end_to_end_id}")
        return data

    def wait_for_recurrence_approval(
        self,
        recurrence_id: str,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> ChargeStatus:
        """Poll until the payer approves the recurrence.

        Returns as soon as the recurrence is approved. Stops early when the
        recurrence ends up rejected/canceled/expired, when ``cancel_event`` is
        set, or when ``timeout`` seconds have passed.

        Raises:
            RecurrenceDeclinedError: payer rejected or the recurrence ended
            WaitCancelledError: ``cancel_event`` was set
            TimeoutError: deadline elapsed before approval
        """
        cancel_event = cancel_event or threading.Event()
        deadline = time.monotonic() + timeout

        while True:
            if cancel_event.is_set():
                raise WaitCancelledError(f"Stopped waiting for recurrence {recurrence_id}")

            status = self.get_charge_status(recurrence_id)
            if status.status == ChargeState.AUTHORIZED:
                return status
            if status.status in (ChargeState.REJECTED, ChargeState.CANCELED, ChargeState.EXPIRED):
                raise RecurrenceDeclinedError(
                    f"Recurrence {recurrence_id} ended as {status.provider_status}",
                    state=status.status.value, gateway=self.gateway,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Recurrence {recurrence_id} not approved within {timeout}s")
            if cancel_event.wait(min(poll_interval, remaining)):
                raise WaitCancelledError(f"Stopped waiting for recurrence {recurrence_id}")

    def register_webhook(self, webhook_url: str) -> Dict[str, Any]:
        """Point the receiver PIX key's notifications at ``webhook_url``"""
        if not self.pix_key:
            raise ValidationError("EFI_PIX_KEY is not configured", gateway=self.gateway)
        data = self._request("PUT", f"/v2/webhook/{self.pix_key}", {"webhookUrl": webhook_url})
        logger.info(f"Registered PIX webhook for key {self.pix_key}: {webhook_url}")
        return data

    def get_webhook(self, pix_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Webhook registered for a PIX key, or None when there is none"""
        pix_key = pix_key or self.pix_key
        if not pix_key:
            return None
        try:
            return self._request("GET", f"/v2/webhook/{pix_key}")
        except NotFoundError:
            return None

    def delete_webhook(self, pix_key: Optional[str] = None) -> None:
        pix_key = pix_key or self.pix_key
        if not pix_key:
            return
        self._request("DELETE", f"/v2/webhook/{pix_key}")
        logger.info(f"Deleted PIX webhook for key {pix_key}")

    def list_webhooks(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "/v2/webhook")
        return data.get("webhooks") or []

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self._webhook_secret:
            return True
        if not signature:
            return False
        expected = hmac_sha256_hex(self._webhook_secret, payload)
        return hmac.compare_digest(signature.strip().lower(), expected)

    def parse_webhook_payload(self, payload: bytes) -> List[NormalizedEvent]:
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise PayloadError(f"Invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise PayloadError("Webhook body must be a JSON object")

        pix_items = body.get("pix") or []
        if not isinstance(pix_items, list):
            raise PayloadError("'pix' must be a list")

        try:
            events = [self._payment_event(item, body.get("tipo")) for item in pix_items]
            rec = body.get("rec")
            if rec:
                events.append(self._recurrence_event(rec))
        except SchemaValidationError as e:
            raise PayloadError(f"Invalid PIX notification: {e}") from e
        return events

    def _payment_event(self, item: Any, kind: Optional[str]) -> NormalizedEvent:
        if not isinstance(item, dict) or not item.get("endToEndId"):
            raise PayloadError("PIX item missing endToEndId")
        e2e = item["endToEndId"]
        return NormalizedEvent(
            gateway=self.gateway,
            event_id=e2e,
            event_type=EventType.PAYMENT_CONFIRMED,
            provider_event_type=kind or "pix",
            recurrence_id=item.get("idRec") or None,
            gateway_payment_id=e2e,
            amount_cents=amount_to_cents(item.get("valor")),
            paid_at=item.get("horario") or None,
            raw=item,
        )

    def _recurrence_event(self, rec: Any) -> NormalizedEvent:
        if not isinstance(rec, dict) or not rec.get("idRec") or not rec.get("status"):
            raise PayloadError("Recurrence notification missing idRec or status")
        status = rec["status"]
        return NormalizedEvent(
            gateway=self.gateway,
            event_id=f"rec:{rec['idRec']}:{status}",
            event_type=_REC_EVENT.get(status, EventType.IGNORED),
            provider_event_type=f"rec.{status}",
            recurrence_id=rec["idRec"],
            subscription_ref=str(rec["contrato"]) if rec.get("contrato") else None,
            reason=rec.get("motivo") or None,
            raw=rec,
        )

    def close(self) -> None:
        self._http.close()
