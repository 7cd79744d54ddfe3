"""
WhatsApp provider adapters.

One adapter per backend behind a uniform interface:

    await adapter.send_message(phone, message, settings, client) -> SendResult

Providers disagree on transport (GET vs POST), auth placement and success
signalling. Those differences stay inside this module: callers only ever see
SendResult(success, message_id, error, error_code). Adapters never raise;
transport errors and timeouts come back as success=False.
"""
import json
import logging
import os
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from models import ProviderConfig

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_SEND_TIMEOUT_SECONDS", "15"))
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "55")

# Error codes
INVALID_ENDPOINT = "INVALID_ENDPOINT"
INVALID_RESPONSE = "INVALID_RESPONSE"
SESSION_DISCONNECTED = "SESSION_DISCONNECTED"
API_ERROR = "API_ERROR"
HTTP_ERROR = "HTTP_ERROR"
NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"

_WABA_KEY_PATTERN = re.compile(r"/v2/api/external/([a-f0-9-]+)", re.IGNORECASE)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def normalize_phone(phone: Optional[str], country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Digits only, country code prefixed when the number is national (<= 11 digits)."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        return ""
    if len(digits) <= 11:
        digits = f"{country_code}{digits}"
    return digits


def mask_phone(phone: str) -> str:
    return f"{phone[:6]}***" if phone else "(empty)"


def _tracking_id(provider: str) -> str:
    """Local id for sends the provider acknowledged without a message id."""
    return "{}_{}_{}".format(
        provider,
        int(time.time() * 1000),
        "".join(random.choices(string.ascii_lowercase + string.digits, k=9)),
    )


def _json_or_none(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else {"data": data}


class BaseProvider:
    """Shared transport error handling. Subclasses implement _send."""

    name = "base"

    async def send_message(
        self,
        phone: str,
        message: str,
        settings: ProviderConfig,
        client: httpx.AsyncClient,
    ) -> SendResult:
        try:
            return await self._send(phone, message, settings, client)
        except httpx.TimeoutException:
            logger.error(f"[{self.name}] Timeout sending to {mask_phone(phone)}")
            return SendResult(success=False, error="Tempo de resposta do provedor esgotado", error_code=TIMEOUT)
        except httpx.HTTPError as e:
            logger.error(f"[{self.name}] Connection error: {e}")
            return SendResult(success=False, error=f"Erro de conexão: {e}", error_code=NETWORK_ERROR)
        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected error: {e}")
            return SendResult(success=False, error=str(e) or e.__class__.__name__, error_code=API_ERROR)

    async def _send(self, phone, message, settings, client) -> SendResult:
        raise NotImplementedError

    @staticmethod
    def _failure_message(data: Optional[Dict[str, Any]], response: httpx.Response) -> str:
        if data and data.get("message"):
            return str(data["message"])
        if response.is_success:
            return "Erro ao enviar mensagem"
        return f"Erro {response.status_code}"


class ZproProvider(BaseProvider):
    """Z-PRO (AtenderChat). Legacy /params/ GET endpoint, or WABA POST when the
    configured URL carries /v2/api/external/{key}."""

    name = "zpro"

    @staticmethod
    def is_waba_url(url: str) -> bool:
        return "/v2/api/external/" in url

    @staticmethod
    def extract_waba_key(url: str) -> Optional[str]:
        match = _WABA_KEY_PATTERN.search(url)
        return match.group(1) if match else None

    @staticmethod
    def external_key(settings: ProviderConfig) -> str:
        key = settings.instance_id or ""
        if not key or key == "zpro-embedded":
            key = settings.api_key
        return key

    async def _send(self, phone, message, settings, client) -> SendResult:
        base_url = settings.api_url.rstrip("/")
        if self.is_waba_url(base_url):
            logger.info(f"[zpro] WABA mode, externalKey={self.extract_waba_key(base_url)}")
            response = await client.post(
                f"{base_url}/SendMessageAPIText",
                json={"number": phone, "body": message},
                headers={"Authorization": f"Bearer {settings.api_key}"},
            )
        else:
            params = urlencode({
                "body": message,
                "number": phone,
                "externalKey": self.external_key(settings),
                "bearertoken": settings.api_key,
                "isClosed": "false",
            })
            response = await client.get(
                f"{base_url}/params/?{params}",
                headers={"Content-Type": "application/json"},
            )
        logger.info(f"[zpro] Response status: {response.status_code}")
        return self.parse_response(response)

    @staticmethod
    def parse_response(response: httpx.Response) -> SendResult:
        text = response.text or ""
        if text.lstrip().lower().startswith(("<!doctype", "<html")):
            return SendResult(
                success=False,
                error="Endpoint incorreto. Verifique a URL da API configurada.",
                error_code=INVALID_ENDPOINT,
            )
        try:
            data = json.loads(text)
        except ValueError:
            return SendResult(
                success=False,
                error=f"Resposta inválida da API: {text[:100]}",
                error_code=INVALID_RESPONSE,
            )
        if not isinstance(data, dict):
            data = {}

        if data.get("error") == "ERR_API_REQUIRES_SESSION":
            return SendResult(
                success=False,
                error="Sessão do WhatsApp desconectada. Acesse o painel do provedor e escaneie o QR Code para reconectar.",
                error_code=SESSION_DISCONNECTED,
            )
        if data.get("error"):
            return SendResult(success=False, error=str(data["error"]), error_code=API_ERROR)

        if response.is_success:
            key = data.get("key") if isinstance(data.get("key"), dict) else {}
            message_id = (
                data.get("id")
                or data.get("messageId")
                or data.get("message_id")
                or data.get("msgId")
                or key.get("id")
                or data.get("zapiMessageId")
                or data.get("wamid")
            )
            # Some Z-PRO versions answer {"id": "sent"} as a bare acknowledgement
            if message_id and str(message_id) != "sent":
                return SendResult(success=True, message_id=str(message_id))
            tracking_id = _tracking_id("zpro")
            logger.info(f"[zpro] Success without message ID, using tracking id {tracking_id}")
            return SendResult(success=True, message_id=tracking_id)

        return SendResult(
            success=False,
            error=str(data.get("message") or f"Erro {response.status_code}"),
            error_code=HTTP_ERROR,
        )


class ZapiProvider(BaseProvider):
    name = "zapi"

    async def _send(self, phone, message, settings, client) -> SendResult:
        response = await client.post(
            f"{settings.api_url.rstrip('/')}/instances/{settings.instance_id}/token/{settings.api_key}/send-text",
            json={"phone": phone, "message": message},
        )
        data = _json_or_none(response)
        if response.is_success and data and data.get("zapiMessageId"):
            return SendResult(success=True, message_id=str(data["zapiMessageId"]))
        return SendResult(success=False, error=self._failure_message(data, response), error_code=API_ERROR)


class EvolutionProvider(BaseProvider):
    name = "evolution"

    async def _send(self, phone, message, settings, client) -> SendResult:
        response = await client.post(
            f"{settings.api_url.rstrip('/')}/message/sendText/{settings.instance_id}",
            json={"number": phone, "text": message},
            headers={"apikey": settings.api_key},
        )
        data = _json_or_none(response)
        key = (data or {}).get("key")
        if response.is_success and isinstance(key, dict) and key.get("id"):
            return SendResult(success=True, message_id=str(key["id"]))
        return SendResult(success=False, error=self._failure_message(data, response), error_code=API_ERROR)


class WppconnectProvider(BaseProvider):
    name = "wppconnect"

    async def _send(self, phone, message, settings, client) -> SendResult:
        response = await client.post(
            f"{settings.api_url.rstrip('/')}/api/{settings.instance_id}/send-message",
            json={"phone": phone, "message": message, "isGroup": False},
            headers={"Authorization": f"Bearer {settings.api_key}"},
        )
        data = _json_or_none(response)
        if response.is_success and data and data.get("status") == "success":
            if data.get("id"):
                return SendResult(success=True, message_id=str(data["id"]))
            tracking_id = _tracking_id("wppconnect")
            logger.info(f"[wppconnect] Success without message ID, using tracking id {tracking_id}")
            return SendResult(success=True, message_id=tracking_id)
        return SendResult(success=False, error=self._failure_message(data, response), error_code=API_ERROR)


PROVIDERS: Dict[str, BaseProvider] = {
    "zpro": ZproProvider(),
    "zapi": ZapiProvider(),
    "evolution": EvolutionProvider(),
    "wppconnect": WppconnectProvider(),
}


def get_provider(name: Optional[str]) -> Optional[BaseProvider]:
    return PROVIDERS.get((name or "").strip().lower())


async def send_whatsapp_message(
    phone: str,
    message: str,
    settings: ProviderConfig,
    timeout: float = SEND_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SendResult:
    """Send through the adapter selected by settings.provider, with an explicit timeout."""
    provider_name = getattr(settings.provider, "value", settings.provider)
    provider = get_provider(provider_name)
    if provider is None:
        return SendResult(success=False, error=f"Provedor desconhecido: {provider_name}", error_code=UNKNOWN_PROVIDER)

    logger.info(f"[WhatsApp] Sending via {provider.name} to {mask_phone(phone)}")
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return await provider.send_message(phone, message, settings, client)
