from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from backend.app.models import GatewayCredentials, SmsStatus
from backend.app.observability import MetricsRegistry
from backend.app.store import InMemoryStore

logger = logging.getLogger("followup_engine.sms")

OPT_OUT_FOOTER = "\nReply STOP to opt out"


class DispatchError(Exception):
    pass


@dataclass(frozen=True)
class SmsDelivery:
    sms_log_id: str
    gateway_sid: str
    status: Optional[str]


class SmsDispatcher:
    """Single-attempt SMS sends through the gateway, one SmsLog row per attempt."""

    def __init__(
        self,
        *,
        store: InMemoryStore,
        default_credentials: Optional[GatewayCredentials] = None,
        client_factory: Callable[[str, str], Client] = Client,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.default_credentials = default_credentials
        self.client_factory = client_factory
        self.metrics = metrics

    def send(
        self,
        *,
        to_number: str,
        from_number: str,
        message: str,
        trigger_id: str,
        contact_id: str,
        interaction_id: Optional[str] = None,
        call_log_id: Optional[str] = None,
        credentials: Optional[GatewayCredentials] = None,
    ) -> SmsDelivery:
        body = message + OPT_OUT_FOOTER
        log = self.store.create_sms_log(
            interaction_id=interaction_id,
            call_log_id=call_log_id,
            trigger_id=trigger_id,
            contact_id=contact_id,
            to_number=to_number,
            from_number=from_number,
            message=body,
        )
        effective = credentials or self.default_credentials
        try:
            if effective is None:
                raise DispatchError("sms gateway credentials not configured")
            client = self.client_factory(effective.account_sid, effective.auth_token)
            result = client.messages.create(body=body, to=to_number, from_=from_number)
        except (TwilioException, DispatchError) as exc:
            self.store.update_sms_log(log.id, status=SmsStatus.failed, error_message=str(exc))
            self._record("failed")
            logger.warning(
                "sms_dispatch_failed sms_log_id=%s trigger_id=%s contact_id=%s error=%s",
                log.id,
                trigger_id,
                contact_id,
                exc,
            )
            if isinstance(exc, DispatchError):
                raise
            raise DispatchError(str(exc)) from exc

        self.store.update_sms_log(log.id, status=SmsStatus.sent, gateway_sid=result.sid)
        self._record("sent")
        logger.info(
            "sms_dispatched sms_log_id=%s trigger_id=%s contact_id=%s gateway_sid=%s",
            log.id,
            trigger_id,
            contact_id,
            result.sid,
        )
        return SmsDelivery(
            sms_log_id=log.id,
            gateway_sid=result.sid,
            status=getattr(result, "status", None),
        )

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_sms(outcome=outcome)
