"""
Backend clients for an OpenAI-compatible chat-completions gateway.

All three supported backends are reached through the same gateway and differ
only in model name, timeout and system prompt. Images travel as base64 data
URLs; generated images come back either as a markdown data URL inside the
message content or as ``data[0].b64_json`` / ``data[0].url``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import httpx

from ..catalog import BackendDescriptor
from ..errors import (
    BackendError,
    BackendTimeoutError,
    InvalidBackendResponseError,
    backend_error_for_status,
    is_fatal,
    is_rate_limited,
)
from ..utils import mime_type_for, score_variant
from .base import (
    BackendClient,
    BackendConfig,
    BackendVariant,
    ConnectionCheck,
    GenerateResult,
    ProcessOptions,
    ProcessResult,
)

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r"data:image/[^;]+;base64,([^)\s\"']+)")
MAX_IMAGE_BYTES = 10 * 1024 * 1024
CONNECTION_TEST_MESSAGE = "Hello, are you working properly?"


def _decode_base64(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidBackendResponseError(f"Malformed base64 image data in API response: {exc}") from exc


def extract_image_bytes(payload: Dict[str, Any]) -> bytes:
    """
    Pull the generated image out of a gateway response.

    Raises:
        InvalidBackendResponseError: If the response carries no image or the
            image data is not valid base64
    """
    data = payload.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("b64_json"):
        return _decode_base64(data[0]["b64_json"])

    choices = payload.get("choices") or []
    content = choices[0].get("message", {}).get("content") if choices else None
    if not content:
        raise InvalidBackendResponseError("No message content received from backend")
    if not isinstance(content, str):
        content = " ".join(str(part.get("text", "")) for part in content if isinstance(part, dict))

    match = DATA_URL_PATTERN.search(content)
    if not match:
        raise InvalidBackendResponseError(
            "No image data found in API response. The model may not have generated an image for this request."
        )
    return _decode_base64(match.group(1))


def _data_url(path: Path) -> str:
    data = path.read_bytes()
    if len(data) > MAX_IMAGE_BYTES:
        raise BackendError(f"Image too large: {len(data) / 1024 / 1024:.2f}MB. Maximum size is 10MB.")
    return f"data:{mime_type_for(path.name)};base64,{base64.b64encode(data).decode('ascii')}"


class OpenAICompatibleClient(BackendClient):
    """
    Talks to one model behind the chat-completions gateway.

    A fresh httpx.AsyncClient is opened per call so that clients can be
    shared between jobs without sharing connection state. Retrying is not
    done here; the fallback executor owns the retry policy.
    """

    system_prompt = "You are an AI assistant specialized in image processing and editing for e-commerce."
    processing_method = "chat_completions"
    # Stop after the first produced variant instead of one request per prompt.
    single_variant = False

    def __init__(
        self,
        descriptor: BackendDescriptor,
        config: BackendConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(descriptor, config)
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @property
    def generation_url(self) -> str:
        return self.config.api_url.replace("/chat/completions", "/images/generations")

    async def _post(self, url: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        try:
            async with self._client(timeout) as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(f"{self.descriptor.display_name} request timed out after {timeout}s", backend_id=self.backend_id) from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{self.descriptor.display_name} request failed: {exc}", backend_id=self.backend_id) from exc

        if response.status_code >= 400:
            raise backend_error_for_status(response.status_code, response.text, self.backend_id)

        try:
            body = response.json()
        except ValueError as exc:
            raise InvalidBackendResponseError("Backend returned a non-JSON response", backend_id=self.backend_id) from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise InvalidBackendResponseError(f"{self.descriptor.display_name} API error: {message}", backend_id=self.backend_id)
        return body

    def _build_messages(self, prompt: str, image_url: str, options: ProcessOptions) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
        ]
        if options.second_image_path is not None:
            content.append({"type": "image_url", "image_url": {"url": _data_url(options.second_image_path), "detail": "high"}})
        if options.mask_data:
            mask_url = options.mask_data if options.mask_data.startswith("data:") else f"data:image/png;base64,{options.mask_data}"
            content.append({"type": "image_url", "image_url": {"url": mask_url}})
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": content},
        ]

    async def process(self, image_path: Path, options: ProcessOptions) -> ProcessResult:
        image_url = _data_url(image_path)
        has_user_prompt = bool(options.context.get("user_prompt"))
        contextual = bool(options.context.get("previous_edits"))
        variants: List[BackendVariant] = []
        last_error: Optional[Exception] = None

        for index, prompt in enumerate(options.prompts):
            payload = {
                "model": self.config.model,
                "stream": False,
                "messages": self._build_messages(prompt, image_url, options),
            }
            try:
                body = await self._post(self.config.api_url, payload, self.config.timeout)
                image_bytes = extract_image_bytes(body)
            except BackendError as exc:
                if is_rate_limited(exc) or is_fatal(exc):
                    raise
                logger.warning(f"{self.backend_id}: variant {index + 1} failed: {exc.detail}")
                last_error = exc
                continue

            variants.append(
                BackendVariant(
                    image_bytes=image_bytes,
                    score=score_variant(index, has_user_prompt, contextual),
                    metadata={
                        "prompt": prompt,
                        "type": options.task_type,
                        "variation": index + 1,
                        "processing_method": self.processing_method,
                        "model": self.config.model,
                    },
                )
            )
            if self.single_variant:
                break

        if not variants:
            if last_error is not None:
                raise last_error
            raise InvalidBackendResponseError("No variants were successfully generated", backend_id=self.backend_id)

        logger.info(f"{self.backend_id}: produced {len(variants)} variant(s) for {options.task_type}")
        return ProcessResult(variants=variants)

    async def generate(self, prompt: str, style: Optional[str], size: str) -> GenerateResult:
        full_prompt = f"{prompt}, {style}" if style else prompt
        payload = {"model": self.config.model, "prompt": full_prompt, "n": 1, "size": size}
        body = await self._post(self.generation_url, payload, self.config.timeout)

        data = body.get("data") or []
        if data and isinstance(data[0], dict) and data[0].get("url") and not data[0].get("b64_json"):
            image_bytes = await self._download(data[0]["url"])
        else:
            image_bytes = extract_image_bytes(body)

        return GenerateResult(
            image_bytes=image_bytes,
            metadata={
                "prompt": full_prompt,
                "original_prompt": prompt,
                "size": size,
                "model": self.config.model,
                "processing_method": "images_generations",
            },
        )

    async def _download(self, url: str) -> bytes:
        try:
            async with self._client(self.config.timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise BackendError(f"Failed to download generated image: {exc}", backend_id=self.backend_id) from exc
        if response.status_code >= 400:
            raise backend_error_for_status(response.status_code, response.text, self.backend_id)
        return response.content

    async def test_connection(self) -> ConnectionCheck:
        payload = {
            "model": self.config.model,
            "stream": False,
            "messages": [{"role": "user", "content": CONNECTION_TEST_MESSAGE}],
        }
        try:
            await self._post(self.config.api_url, payload, self.config.connection_test_timeout)
        except BackendError as exc:
            logger.warning(f"{self.backend_id}: connection test failed: {exc.detail}")
            return ConnectionCheck(ok=False, error=exc.detail)
        return ConnectionCheck(ok=True)


class GeminiClient(OpenAICompatibleClient):
    processing_method = "gemini_2.5_flash_image"


class ChatGPTClient(OpenAICompatibleClient):
    processing_method = "chatgpt_vision"


class SoraClient(OpenAICompatibleClient):
    system_prompt = "You are a creative AI artist specialized in artistic image transformation and visual innovation."
    processing_method = "sora_image"
    single_variant = True


CLIENT_CLASSES: Dict[str, Type[OpenAICompatibleClient]] = {
    "gemini": GeminiClient,
    "chatgpt": ChatGPTClient,
    "sora": SoraClient,
}
