from __future__ import annotations

import asyncio
import functools
import threading
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import errors, types

from aibridge.options import provider_payload
from aibridge.providers.base import ProviderAdapter


class GeminiAdapter(ProviderAdapter):
    """Google Gemini text generation and embeddings through the google-genai SDK.

    The SDK is synchronous, so calls run in the default executor. Client
    errors (4xx) are reported as error payloads and are not retried.
    """

    name = "gemini"
    supports_embeddings = True

    def __init__(self) -> None:
        self._clients: Dict[str, genai.Client] = {}
        self._lock = threading.Lock()

    def get_client(self, credentials: str) -> genai.Client:
        with self._lock:
            client = self._clients.get(credentials)
            if client is None:
                client = genai.Client(api_key=credentials)
                self._clients[credentials] = client
            return client

    @staticmethod
    def _model_path(model: str) -> str:
        return model if model.startswith("models/") else f"models/{model}"

    def shape_chat(self, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = provider_payload(options)
        system_parts = []
        contents = []
        for msg in payload.get("messages", []):
            if msg.get("role") == "system":
                system_parts.append(msg["content"])
            else:
                contents.append(
                    {
                        "role": "model" if msg.get("role") == "assistant" else "user",
                        "text": msg["content"],
                    }
                )
        return {
            "model": payload["model"],
            "contents": contents,
            "system_instruction": "\n\n".join(system_parts) or None,
            "temperature": payload.get("temperature"),
            "top_p": payload.get("top_p"),
            "max_output_tokens": payload.get("max_tokens"),
            "thinking_budget": payload.get("thinking_budget"),
        }

    async def _run(self, func, *args) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args))
        except errors.ClientError as exc:
            return {"error": {"code": exc.code, "message": str(exc)}}

    async def invoke(self, credentials: str, payload: Dict[str, Any]) -> Any:
        return await self._run(self._generate, credentials, payload)

    def _generate(self, credentials: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        generation_config = types.GenerateContentConfig(
            temperature=payload.get("temperature"),
            top_p=payload.get("top_p"),
            max_output_tokens=payload.get("max_output_tokens"),
            system_instruction=payload.get("system_instruction"),
        )
        model_name = payload["model"]
        if "2.5-pro" in model_name and payload.get("thinking_budget") is not None:
            generation_config.thinking_config = types.ThinkingConfig(
                thinking_budget=payload["thinking_budget"]
            )

        contents = [
            types.Content(role=item["role"], parts=[types.Part(text=item["text"])])
            for item in payload["contents"]
        ]
        response = self.get_client(credentials).models.generate_content(
            model=self._model_path(model_name),
            contents=contents,
            config=generation_config,
        )
        return {"text": response.text}

    def extract_text(self, raw: Any) -> Optional[str]:
        if not isinstance(raw, dict):
            return None
        return raw.get("text") or None

    def shape_embedding(self, options: Dict[str, Any]) -> Dict[str, Any]:
        payload = provider_payload(options)
        return {"model": payload["model"], "contents": payload.get("prompt", payload.get("input"))}

    async def embed(self, credentials: str, payload: Dict[str, Any]) -> Any:
        return await self._run(self._embed, credentials, payload)

    def _embed(self, credentials: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = self.get_client(credentials).models.embed_content(
            model=self._model_path(payload["model"]), contents=payload["contents"]
        )
        if not result.embeddings:
            return {"embedding": None}
        return {"embedding": list(result.embeddings[0].values or [])}

    def extract_embedding(self, raw: Any) -> Optional[List[float]]:
        if not isinstance(raw, dict) or not raw.get("embedding"):
            return None
        return [float(value) for value in raw["embedding"]]
