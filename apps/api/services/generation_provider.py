"""HTTP client for the external image/video generation provider."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import require_provider_api_key, settings

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"success", "completed"}
FAILURE_STATES = {"fail", "failed"}


class GenerationProviderError(RuntimeError):
    """Raised when the provider rejects a task, fails it, or cannot be reached."""


@dataclass(frozen=True)
class ProviderTaskStatus:
    task_id: str
    state: str
    result_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def is_failure(self) -> bool:
        return self.state in FAILURE_STATES

    @property
    def result_url(self) -> Optional[str]:
        return self.result_urls[0] if self.result_urls else None


def _provider_model(asset_type: str, model: str, image_url: Optional[str]) -> str:
    if asset_type == "video":
        suffix = "image-to-video" if image_url else "text-to-video"
        return f"{model}-{suffix}"
    return model


def _map_aspect_ratio(ratio: Optional[str]) -> str:
    if ratio in {"1:1", "square"}:
        return "square"
    if ratio in {"9:16", "portrait"}:
        return "portrait"
    return "landscape"


def _extract_result_urls(payload: Dict[str, Any]) -> List[str]:
    result = payload.get("result") or {}
    urls: List[str] = [url for url in result.get("resultUrls") or [] if url]
    for key in ("videoUrl", "imageUrl"):
        if result.get(key):
            urls.append(result[key])

    raw_json = payload.get("resultJson")
    if raw_json:
        try:
            parsed = json.loads(raw_json)
        except (TypeError, ValueError) as exc:
            logger.warning("Could not parse provider resultJson: %s", exc)
        else:
            urls.extend(url for url in parsed.get("resultUrls") or [] if url)

    deduped: List[str] = []
    for url in urls:
        if url not in deduped:
            deduped.append(url)
    return deduped


class GenerationProviderClient:
    """Async client for the task-based generation API (create, then poll)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._base_url = (base_url or settings.GENERATION_PROVIDER_URL).rstrip("/")
        self._api_key = api_key
        self._timeout = float(timeout or settings.GENERATION_PROVIDER_TIMEOUT_SECONDS)

    def _headers(self) -> Dict[str, str]:
        try:
            api_key = self._api_key or require_provider_api_key()
        except ValueError as exc:
            logger.error("Generation provider is not configured: %s", exc)
            raise GenerationProviderError("Generation provider is not configured") from exc
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = self._headers()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Generation provider request failed: %s %s: %s", method, path, exc)
            raise GenerationProviderError(f"Generation provider unreachable: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400 or not isinstance(data, dict):
            detail = (data or {}).get("msg") if isinstance(data, dict) else resp.text[:200]
            raise GenerationProviderError(f"Generation provider error (HTTP {resp.status_code}): {detail}")
        try:
            code = int(data.get("code", 200))
        except (TypeError, ValueError) as exc:
            raise GenerationProviderError(f"Generation provider sent an unreadable code: {data.get('code')!r}") from exc
        if code != 200:
            raise GenerationProviderError(data.get("msg") or "Generation provider rejected the request")
        return data.get("data") or {}

    async def create_task(
        self,
        *,
        asset_type: str,
        model: str,
        prompt: str,
        aspect_ratio: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> str:
        """Start a generation task and return the provider task id."""
        task_input: Dict[str, Any] = {"prompt": prompt}
        if asset_type == "video":
            task_input["aspect_ratio"] = _map_aspect_ratio(aspect_ratio)
        elif aspect_ratio:
            task_input["image_size"] = aspect_ratio
        if image_url:
            task_input["image_urls"] = [image_url]

        data = await self._request(
            "POST",
            "/jobs/createTask",
            json={"model": _provider_model(asset_type, model, image_url), "input": task_input},
        )
        task_id = str(data.get("taskId") or "").strip()
        if not task_id:
            raise GenerationProviderError("Generation provider did not return a task id")
        return task_id

    async def get_task_status(self, task_id: str) -> ProviderTaskStatus:
        data = await self._request("GET", "/jobs/recordInfo", params={"taskId": task_id})
        state = str(data.get("state") or data.get("status") or "processing").lower()
        return ProviderTaskStatus(
            task_id=task_id,
            state=state,
            result_urls=_extract_result_urls(data),
            error=data.get("failMsg") or data.get("error"),
        )


_client: Optional[GenerationProviderClient] = None


def get_generation_provider() -> GenerationProviderClient:
    """Return the shared provider client."""
    global _client
    if _client is None:
        _client = GenerationProviderClient()
    return _client
