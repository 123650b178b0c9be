from __future__ import annotations
import json
import re
import httpx
from typing import Any, Dict, List, Optional
from .settings import settings


class OpenAIClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.openai_api_key
		if not self.api_key:
			raise ValueError("OPENAI_API_KEY is not configured")
		self.model = model or settings.openai_selection_model
		self.base_url = (base_url or settings.openai_base_url).rstrip("/")
		self._headers = {"Authorization": f"Bearer {self.api_key}"}
		self._client = httpx.AsyncClient(timeout=settings.openai_timeout_seconds)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=settings.openai_timeout_seconds)

	async def chat(
		self,
		messages: List[Dict[str, Any]],
		*,
		model: Optional[str] = None,
		json_mode: bool = False,
		temperature: Optional[float] = None,
		max_tokens: Optional[int] = None,
	) -> str:
		message = await self.chat_message(
			messages,
			model=model,
			json_mode=json_mode,
			temperature=temperature,
			max_tokens=max_tokens,
			allow_fallback=True,
		)
		return message.get("content") or ""

	async def chat_json(
		self,
		messages: List[Dict[str, Any]],
		*,
		model: Optional[str] = None,
		temperature: Optional[float] = None,
	) -> Dict[str, Any]:
		text = await self.chat(messages, model=model, json_mode=True, temperature=temperature)
		return extract_json_object(text)

	async def chat_message(
		self,
		messages: List[Dict[str, Any]],
		*,
		model: Optional[str] = None,
		json_mode: bool = False,
		tools: Optional[List[Dict[str, Any]]] = None,
		tool_choice: Optional[Any] = None,
		temperature: Optional[float] = None,
		max_tokens: Optional[int] = None,
		allow_fallback: bool = False,
	) -> Dict[str, Any]:
		"""Return the first choice's message (``content`` and/or ``tool_calls``)."""
		payload: Dict[str, Any] = {"model": model or self.model, "messages": messages}
		if json_mode:
			payload["response_format"] = {"type": "json_object"}
		if tools:
			payload["tools"] = tools
			if tool_choice is not None:
				payload["tool_choice"] = tool_choice
		if max_tokens is not None:
			payload["max_tokens"] = max_tokens
		if temperature is not None:
			payload["temperature"] = temperature
		last_error: Optional[Exception] = None
		try:
			r = await self._client.post(f"{self.base_url}/chat/completions", headers=self._headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			# Reasoning models reject sampling parameters; retry once without them
			if "temperature" in payload or "max_tokens" in payload:
				fallback_payload = dict(payload)
				fallback_payload.pop("temperature", None)
				if "max_tokens" in fallback_payload:
					fallback_payload["max_completion_tokens"] = fallback_payload.pop("max_tokens")
				try:
					r = await self._client.post(f"{self.base_url}/chat/completions", headers=self._headers, json=fallback_payload)
					r.raise_for_status()
				except Exception as err:
					last_error = err
			else:
				last_error = http_err
		except httpx.RequestError as net_err:
			last_error = net_err
		if last_error is None:
			try:
				data = r.json()
				return data["choices"][0]["message"]
			except Exception:
				last_error = RuntimeError(f"Unexpected OpenAI response: {r.text}")
		if not allow_fallback or not self._fallback_enabled or tools:
			raise last_error or RuntimeError("OpenAI call failed and no fallback configured")
		content = await self._fallback_generate(messages, last_error, json_mode=json_mode)
		return {"role": "assistant", "content": content}

	async def speech(self, text: str, *, voice: str, model: Optional[str] = None, response_format: str = "mp3") -> bytes:
		payload = {
			"model": model or settings.openai_tts_model,
			"voice": voice,
			"input": text,
			"response_format": response_format,
		}
		r = await self._client.post(f"{self.base_url}/audio/speech", headers=self._headers, json=payload)
		r.raise_for_status()
		return r.content

	async def transcribe(
		self,
		audio: bytes,
		*,
		filename: str = "audio.webm",
		content_type: str = "audio/webm",
		language: str = "de",
		model: Optional[str] = None,
	) -> str:
		files = {"file": (filename, audio, content_type)}
		data = {
			"model": model or settings.openai_stt_model,
			"language": language,
			"response_format": "text",
		}
		r = await self._client.post(f"{self.base_url}/audio/transcriptions", headers=self._headers, data=data, files=files)
		r.raise_for_status()
		return r.text.strip()

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_generate(self, messages: List[Dict[str, Any]], primary_error: Optional[Exception], *, json_mode: bool) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error or RuntimeError("Fallback requested but OpenRouter is not configured")
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": self._openrouter_model,
			"messages": messages,
		}
		if json_mode:
			payload["response_format"] = {"type": "json_object"}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=payload,
			)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as fallback_err:
			if primary_error is not None:
				raise RuntimeError(
					f"OpenAI primary call failed ({primary_error}); fallback via OpenRouter also failed"
				) from fallback_err
			raise fallback_err


def new_client(model: Optional[str] = None) -> OpenAIClient:
	return OpenAIClient(model=model)


def tool_call_arguments(message: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
	"""Parsed arguments of the first tool call named ``name``, if the model made one."""
	for call in message.get("tool_calls") or []:
		function = call.get("function") or {}
		if function.get("name") != name:
			continue
		raw = function.get("arguments") or "{}"
		if isinstance(raw, dict):
			return raw
		return extract_json_object(raw)
	return None


def extract_json_object(text: str) -> Dict[str, Any]:
	try:
		return json.loads(text)
	except Exception:
		pass
	code_block = re.search(r"```json\s*([\s\S]*?)\s*```", text)
	if code_block:
		candidate = code_block.group(1)
		try:
			return json.loads(candidate)
		except Exception:
			pass
	first = text.find("{")
	last = text.rfind("}")
	if first != -1 and last != -1 and last > first:
		candidate = text[first : last + 1]
		try:
			return json.loads(candidate)
		except Exception:
			pass
	raise ValueError("LLM did not return valid JSON.")
