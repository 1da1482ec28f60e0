"""HTTP classifier connector for ticket categorisation and escalation scoring."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from ..services import Classifier
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings


@register
class HttpClassifier(BaseConnector, Classifier):
    """Real classifier backed by a JSON model service.

    Required settings: CLASSIFIER_BASE_URL
    Optional: CLASSIFIER_API_KEY, CLASSIFIER_TIMEOUT

    Endpoints:
        POST /categorize          {subject, body} -> {category, department, priority, confidence}
        POST /suggest-responses   {entity}        -> {suggestions: [str]}
        POST /predict-escalation  {entity}        -> {probability: float}
    """

    service_name = "classifier"
    concern = "classifier"

    def __init__(self, base_url: str, api_key: str | None, timeout: float, http_client: httpx.AsyncClient) -> None:
        super().__init__(http_client)
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> HttpClassifier:
        return cls(
            settings.classifier_base_url or "",
            settings.classifier_api_key,
            settings.classifier_timeout,
            http_client,
        )

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.classifier_base_url)

    async def categorize(self, subject: str, body: str) -> dict[str, Any]:
        data = await self._post("/categorize", {"subject": subject, "body": body}, "categorize")
        return {
            "category": data.get("category"),
            "department": data.get("department"),
            "priority": data.get("priority"),
            "confidence": float(data.get("confidence") or 0.0),
        }

    async def suggest_responses(self, entity: dict[str, Any]) -> list[str]:
        data = await self._post("/suggest-responses", {"entity": entity}, "suggest_responses")
        return [str(s) for s in data.get("suggestions", [])]

    async def predict_escalation(self, entity: dict[str, Any]) -> float:
        data = await self._post("/predict-escalation", {"entity": entity}, "predict_escalation")
        return float(data.get("probability") or 0.0)

    async def _post(self, path: str, payload: dict[str, Any], action: str) -> dict[str, Any]:
        resp = await self._request(
            "POST",
            f"{self._base}{path}",
            headers=self._headers,
            json=payload,
            timeout=self._timeout,
        )
        self._check_error(resp, action)
        return resp.json()
