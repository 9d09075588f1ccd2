# integrations/gemini_client.py
"""
Image-to-image enhancement through the Gemini generateContent REST API.

The pipeline only depends on the ImageEnhancer protocol; GeminiImageEnhancer
is the production implementation and tests substitute a fake.
"""

import base64
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from storyflow.core.exceptions import ContentPolicyError, ExternalServiceError
from storyflow.core.logger import logger

# USD per generated image
MODEL_COSTS: Dict[str, float] = {
    "gemini-2.5-flash-image": 0.01,
    "gemini-3-pro-image-preview": 0.04,
}


@dataclass(frozen=True)
class TransformOptions:
    prompt: str
    negative_prompt: Optional[str] = None
    faithfulness: float = 0.7
    aspect_ratio: str = "9:16"
    text_overlay: Optional[str] = None


@dataclass(frozen=True)
class TransformResult:
    image_bytes: bytes
    mime_type: str
    model: str
    cost: float


class ImageEnhancer(Protocol):
    def transform(self, image_bytes: bytes, mime_type: str, options: TransformOptions) -> TransformResult:
        ...


def faithfulness_instruction(faithfulness: float) -> str:
    """The API has no fidelity knob, so the level is expressed in the prompt."""
    pct = round(faithfulness * 100)
    if faithfulness >= 0.8:
        return (
            f"\nCRITICAL INSTRUCTION - HIGH FIDELITY MODE ({pct}%):\n"
            "- Keep the EXACT product from the input image, do not replace or reimagine it\n"
            "- Only enhance lighting, color grading, background and atmosphere\n"
            "- Do not add, remove or change any product features"
        )
    if faithfulness >= 0.6:
        return (
            f"\nIMPORTANT - BALANCED MODE ({pct}%):\n"
            "- Maintain the core appearance and identity of the product\n"
            "- You may enhance the presentation, styling and environment\n"
            "- The product should remain clearly recognizable"
        )
    return (
        f"\nCREATIVE MODE ({pct}%):\n"
        "- You have more freedom to interpret and enhance the image\n"
        "- Maintain the general concept and product type"
    )


def build_full_prompt(options: TransformOptions) -> str:
    prompt = options.prompt + faithfulness_instruction(options.faithfulness)
    if options.text_overlay:
        prompt += (
            f'\n\nSubtly render the text "{options.text_overlay}" in a modern, elegant serif '
            "font in the lower third of the image, with a subtle shadow for readability."
        )
    if options.negative_prompt:
        prompt += f"\n\nAVOID: {options.negative_prompt}"
    return prompt


class GeminiImageEnhancer:
    """
    Calls models/{model}:generateContent with the source image inline and
    returns the first image part of the first candidate.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120,
        session: Optional[requests.Session] = None
    ) -> None:
        if not api_key:
            raise ValueError("GEMINI_API_KEY is not configured")
        self.model = model
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def transform(self, image_bytes: bytes, mime_type: str, options: TransformOptions) -> TransformResult:
        body: Dict[str, Any] = {
            "contents": [{
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": mime_type or "image/png",
                            "data": base64.b64encode(image_bytes).decode("ascii"),
                        }
                    },
                    {"text": build_full_prompt(options)},
                ]
            }],
            "generationConfig": {
                "responseModalities": ["IMAGE", "TEXT"],
                "imageConfig": {"aspectRatio": options.aspect_ratio},
            },
        }

        logger.info(f"Generating enhanced image with {self.model}")
        resp = self._session.post(
            f"{self._api_base}/models/{self.model}:generateContent",
            params={"key": self._api_key},
            json=body,
            timeout=self.timeout,
        )

        if not resp.ok:
            try:
                message = resp.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise ExternalServiceError(
                f"Gemini API error: {message or resp.reason}",
                status_code=resp.status_code,
            )

        return self._extract_image(resp.json())

    def _extract_image(self, data: Dict[str, Any]) -> TransformResult:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "NO_CANDIDATES")
            raise ContentPolicyError(f"AI generated no candidates ({reason})", error_code=reason)

        parts = (candidates[0].get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return TransformResult(
                    image_bytes=base64.b64decode(inline["data"]),
                    mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    model=self.model,
                    cost=MODEL_COSTS.get(self.model, 0.0),
                )

        finish_reason = candidates[0].get("finishReason", "NO_IMAGE")
        text = next((p["text"] for p in parts if p.get("text")), None)
        if text:
            logger.info(f"Gemini returned text instead of an image: {text[:200]}")
        raise ContentPolicyError(
            f"AI did not generate an image ({finish_reason})",
            error_code=finish_reason,
        )
