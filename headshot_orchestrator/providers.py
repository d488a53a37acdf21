"""
Concrete adapters: fal (primary), Leonardo (secondary), Replicate (legacy).

Wire formats stay here. Each adapter turns a GenerationRequest into the
provider's payload and the provider's job document back into a JobOutcome.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx
from dotenv import load_dotenv

from .adapters import HTTPProviderAdapter, ProviderAdapter, asset_urls, expect_object
from .config import OrchestratorConfig, ProviderConfig
from .errors import ConfigError, ProviderError
from .models import (
    ErrorKind,
    Failed,
    GenerationRequest,
    JobOutcome,
    Pending,
    RateLimited,
    Succeeded,
    parse_resolution,
)

logger = logging.getLogger("headshot_orchestrator.providers")


def _rate_limited(exc: ProviderError) -> RateLimited:
    return RateLimited(retry_after=exc.retry_after if exc.retry_after is not None else 1.0)


# ─────────────────────────────────────────────────────────────────────────────
# fal.ai — queue API
# ─────────────────────────────────────────────────────────────────────────────

class FalAdapter(HTTPProviderAdapter):
    """
    fal queue: POST /{model} enqueues, then status / response URLs.

    The submit response carries the status, response and cancel URLs; they
    are kept per request id so poll() does not need to know the model.
    """

    auth_scheme = "Key"
    default_base_url = "https://queue.fal.run"
    probe_url = "https://api.fal.ai/v1/models?limit=1"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._urls: dict[str, dict[str, str]] = {}

    async def submit(self, request: GenerationRequest, model_id: str) -> str:
        width, height = parse_resolution(request.resolution)
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "num_images": request.image_count,
            "image_size": {"width": width, "height": height},
            "num_inference_steps": request.steps,
        }
        if request.asset_refs:
            payload["image_url"] = request.asset_refs[0]
        data = await self._request_object("POST", f"/{model_id}", json=payload)
        request_id = data.get("request_id")
        if not request_id:
            raise ProviderError(ErrorKind.UNKNOWN_TRANSIENT, "fal: submit response without request_id")
        request_id = str(request_id)
        base = f"/{model_id}/requests/{request_id}"
        self._urls[request_id] = {
            "status": data.get("status_url") or f"{base}/status",
            "response": data.get("response_url") or base,
            "cancel": data.get("cancel_url") or f"{base}/cancel",
        }
        return request_id

    async def poll(self, job_id: str) -> JobOutcome:
        urls = self._urls.get(job_id)
        if urls is None:
            raise ProviderError(ErrorKind.INVALID_REQUEST, f"fal: unknown request {job_id}")
        try:
            status = await self._request_object("GET", urls["status"])
            state = status.get("status")
            if state in ("IN_QUEUE", "IN_PROGRESS"):
                return Pending()
            if state != "COMPLETED":
                self._urls.pop(job_id, None)
                return Failed(ErrorKind.UNKNOWN_TRANSIENT, f"fal: unexpected status {state!r}")
            result = await self._request_object("GET", urls["response"])
            outcome = Succeeded(asset_urls(result.get("images"), "fal: images"))
        except ProviderError as exc:
            if exc.kind is ErrorKind.RATE_LIMITED:
                return _rate_limited(exc)
            # transient errors keep the URLs; the orchestrator may poll again
            if not exc.kind.retryable:
                self._urls.pop(job_id, None)
            raise
        self._urls.pop(job_id, None)
        return outcome

    async def cancel(self, job_id: str) -> None:
        urls = self._urls.pop(job_id, None)
        if urls is not None:
            await self._request("PUT", urls["cancel"])

    async def probe(self) -> None:
        await self._request("GET", self.probe_url)


# ─────────────────────────────────────────────────────────────────────────────
# Leonardo — generations API
# ─────────────────────────────────────────────────────────────────────────────

class LeonardoAdapter(HTTPProviderAdapter):
    default_base_url = "https://cloud.leonardo.ai/api/rest/v1"

    async def submit(self, request: GenerationRequest, model_id: str) -> str:
        width, height = parse_resolution(request.resolution)
        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "modelId": model_id,
            "num_images": request.image_count,
            "width": width,
            "height": height,
            "num_inference_steps": request.steps,
        }
        if request.asset_refs:
            payload["init_image_id"] = request.asset_refs[0]
        data = await self._request_object("POST", "/generations", json=payload)
        job = expect_object(data.get("sdGenerationJob"), "leonardo: sdGenerationJob")
        generation_id = job.get("generationId")
        if not generation_id:
            raise ProviderError(ErrorKind.UNKNOWN_TRANSIENT, "leonardo: no generationId in response")
        return str(generation_id)

    async def poll(self, job_id: str) -> JobOutcome:
        try:
            data = await self._request_object("GET", f"/generations/{job_id}")
        except ProviderError as exc:
            if exc.kind is ErrorKind.RATE_LIMITED:
                return _rate_limited(exc)
            raise
        generation = expect_object(data.get("generations_by_pk"), "leonardo: generations_by_pk")
        status = generation.get("status")
        if status == "PENDING":
            return Pending()
        if status == "COMPLETE":
            return Succeeded(asset_urls(generation.get("generated_images"),
                                        "leonardo: generated_images"))
        if status == "FAILED":
            return Failed(ErrorKind.UNKNOWN_TRANSIENT, "leonardo: generation failed")
        return Failed(ErrorKind.UNKNOWN_TRANSIENT, f"leonardo: unexpected status {status!r}")

    async def cancel(self, job_id: str) -> None:
        await self._request("DELETE", f"/generations/{job_id}")

    async def probe(self) -> None:
        await self._request("GET", "/me")


# ─────────────────────────────────────────────────────────────────────────────
# Replicate — predictions API (legacy)
# ─────────────────────────────────────────────────────────────────────────────

class ReplicateAdapter(HTTPProviderAdapter):
    default_base_url = "https://api.replicate.com/v1"

    async def submit(self, request: GenerationRequest, model_id: str) -> str:
        width, height = parse_resolution(request.resolution)
        inputs: dict[str, Any] = {
            "prompt": request.prompt,
            "num_outputs": request.image_count,
            "width": width,
            "height": height,
            "num_inference_steps": request.steps,
        }
        if request.asset_refs:
            inputs["image"] = request.asset_refs[0]
        data = await self._request_object(
            "POST", "/predictions", json={"version": model_id, "input": inputs},
        )
        prediction_id = data.get("id")
        if not prediction_id:
            raise ProviderError(ErrorKind.UNKNOWN_TRANSIENT, "replicate: no prediction id")
        return str(prediction_id)

    async def poll(self, job_id: str) -> JobOutcome:
        try:
            data = await self._request_object("GET", f"/predictions/{job_id}")
        except ProviderError as exc:
            if exc.kind is ErrorKind.RATE_LIMITED:
                return _rate_limited(exc)
            raise
        status = data.get("status")
        if status in ("starting", "processing"):
            return Pending()
        if status == "succeeded":
            return Succeeded(asset_urls(data.get("output"), "replicate: output"))
        if status == "canceled":
            return Failed(ErrorKind.CANCELLED, "replicate: prediction canceled")
        return Failed(ErrorKind.UNKNOWN_TRANSIENT, f"replicate: {data.get('error') or status}")

    async def cancel(self, job_id: str) -> None:
        await self._request("POST", f"/predictions/{job_id}/cancel")

    async def probe(self) -> None:
        await self._request("GET", "/account")


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

ADAPTER_KINDS: dict[str, type[HTTPProviderAdapter]] = {
    "fal": FalAdapter,
    "leonardo": LeonardoAdapter,
    "replicate": ReplicateAdapter,
}


def build_adapter(provider: ProviderConfig, api_key: str,
                  transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderAdapter:
    cls = ADAPTER_KINDS.get(provider.kind)
    if cls is None:
        raise ConfigError(
            f"Provider {provider.id!r}: unknown kind {provider.kind!r} "
            f"(known: {sorted(ADAPTER_KINDS)})"
        )
    return cls(
        provider.profile(), api_key, provider.base_url or cls.default_base_url,
        transport=transport,
    )


def build_adapters(config: OrchestratorConfig, *,
                   transport: Optional[httpx.AsyncBaseTransport] = None
                   ) -> dict[str, ProviderAdapter]:
    """
    One adapter per configured provider, keyed by provider id.

    API keys come from the environment (``.env`` loaded once here). A
    missing key is logged, not fatal: the provider will fail its first call
    with auth_failure and be disabled.
    """
    load_dotenv(override=True)
    adapters: dict[str, ProviderAdapter] = {}
    for provider in config.providers:
        api_key = os.environ.get(provider.api_key_env, "") if provider.api_key_env else ""
        if provider.api_key_env and not api_key:
            logger.warning("%s: %s is not set", provider.id, provider.api_key_env)
        adapters[provider.id] = build_adapter(provider, api_key, transport)
    return adapters
