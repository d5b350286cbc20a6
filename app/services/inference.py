"""
외부 VTON 추론 호출

비즈니스 로직:
- 워커는 InferenceClient 인터페이스에만 의존 (실제 모델 호출은 외부 서비스)
- HTTP 구현은 INFERENCE_URL로 이미지/카테고리/모드를 보내고 결과 이미지를 받음
- 네트워크 오류, 5xx, 429는 재시도 가능 / 그 외 4xx는 재시도 불가
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from app.core.config import settings
from app.core.errors import InferenceError

logger = logging.getLogger(__name__)


class InferenceClient(Protocol):
    async def generate(
        self,
        person_image: str,
        garment_image: str,
        category: str,
        mode: str,
    ) -> Dict[str, Any]:
        """{"resultImage": str, "confidence": float} 반환, 실패 시 InferenceError"""
        ...


class HttpInferenceClient:
    """HTTP 추론 서비스 클라이언트"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.INFERENCE_URL
        self.api_key = api_key if api_key is not None else settings.INFERENCE_API_KEY
        self.timeout = timeout if timeout is not None else settings.INFERENCE_TIMEOUT_SECONDS
        self._transport = transport

    async def generate(
        self,
        person_image: str,
        garment_image: str,
        category: str,
        mode: str,
    ) -> Dict[str, Any]:
        if not self.base_url:
            raise InferenceError("INFERENCE_URL is not configured", retryable=False)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "personImage": person_image,
            "garmentImage": garment_image,
            "category": category,
            "mode": mode,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.base_url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise InferenceError(f"Inference request timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise InferenceError(f"Inference transport error: {e}", retryable=True)

        if response.status_code == 429 or response.status_code >= 500:
            raise InferenceError(
                f"Inference service returned {response.status_code}: {response.text[:200]}",
                retryable=True,
            )
        if response.status_code >= 400:
            raise InferenceError(
                f"Inference rejected request ({response.status_code}): {response.text[:200]}",
                retryable=False,
                user_message="画像を処理できませんでした。別の画像でお試しください。",
            )

        try:
            data = response.json()
        except ValueError:
            raise InferenceError("Inference service returned invalid JSON", retryable=True)

        if not isinstance(data, dict) or not data.get("resultImage"):
            raise InferenceError("Inference response is missing resultImage", retryable=True)

        return {
            "resultImage": data["resultImage"],
            "confidence": float(data.get("confidence", 0.0)),
        }
