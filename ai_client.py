import os
import logging
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Union

import requests
from pydantic import ValidationError

from bundle import IR, MvpResult, Smoke
from config import DEFAULT_MODEL, DEFAULT_OPENAI_BASE_URL, http_timeout
from errors import ConfigError, InvalidRequestError, MalformedOutputError, UpstreamError

logger = logging.getLogger("ai-client")

MAX_THREAD_MESSAGES = 12
ROLES = ("system", "user", "assistant")

MVP_SCHEMA = {
  "type": "object",
  "additionalProperties": False,
  "properties": {
    "ir": {
      "type": "object",
      "additionalProperties": True,
      "properties": {
        "name": {"type": "string"},
        "app_type": {"type": "string", "enum": ["spa_api", "spa", "api"]},
        "pages": {"type": "array", "items": {"type": "string"}},
        "api_routes": {
          "type": "array",
          "items": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
              "method": {"type": "string"},
              "path": {"type": "string"},
            },
            "required": ["method", "path"],
          },
        },
        "notes": {"type": "string"},
        "features": {"type": "array", "items": {"type": "string"}},
      },
      "required": ["name", "app_type"],
    },
    "files": {
      "type": "object",
      "additionalProperties": {"type": "string"},
      "description": (
        "Map of file path -> UTF-8 contents. Keep the bundle tiny and deployable as a static site "
        "with an optional _worker.js edge script. Prefer vanilla HTML/JS, inline assets, and zero build steps."
      ),
    },
    "smoke": {
      "type": "object",
      "additionalProperties": False,
      "properties": {
        "passed": {"type": "boolean"},
        "logs": {"type": "array", "items": {"type": "string"}},
      },
      "required": ["passed", "logs"],
    },
  },
  "required": ["ir", "files", "smoke"],
}

SYSTEM_PROMPT = "\n".join([
  "You are an expert product+full-stack generator for Cloudflare Pages (Advanced Mode) apps.",
  "Produce a minimal, production-ready bundle that can be deployed via Cloudflare Pages Direct Upload.",
  "Constraints:",
  "- Avoid frameworks or build steps; output plain files (HTML, JS, CSS) and tiny server code only if necessary.",
  "- If the app needs API, include routes handled via a Pages Advanced Mode Worker `_worker.js` or proxy `/api/*` to an orchestrator URL placeholder.",
  "- Keep total bundle size small; inline assets where reasonable; no external package managers.",
  "- Always include `index.html` and put the app name in its <title> and main heading.",
  "Quality bar:",
  "- Code should run without modification after upload.",
  "- Keep file paths stable and flat (e.g., `index.html`, `app.js`, `_worker.js`).",
  "- Comment sparingly but clearly.",
])


@dataclass
class ChatMessage:
  role: str
  content: str

  @classmethod
  def coerce(cls, raw: Any) -> "ChatMessage":
    if isinstance(raw, ChatMessage):
      return raw
    if hasattr(raw, "model_dump"):
      raw = raw.model_dump()
    raw = raw if isinstance(raw, dict) else {"content": raw}
    role = raw.get("role")
    return cls(role=role if role in ROLES else "user", content=str(raw.get("content") or ""))

  def as_dict(self) -> dict:
    return {"role": self.role, "content": self.content}


# --- Known upstream response shapes -------------------------------------------

@dataclass
class OutputMessage:
  """Responses API: output[].content[] with type == output_text."""
  text: str


@dataclass
class OutputText:
  """Responses API convenience field at the top level."""
  text: str


@dataclass
class ChatCompletion:
  """Chat Completions compatible proxies: choices[0].message.content."""
  text: str


@dataclass
class UnrecognizedShape:
  keys: List[str]


ModelResponse = Union[OutputMessage, OutputText, ChatCompletion, UnrecognizedShape]


def _content_text(part: dict) -> Optional[str]:
  text = part.get("text")
  if isinstance(text, str):
    return text
  if isinstance(text, dict) and isinstance(text.get("value"), str):
    return text["value"]
  return None


def decode_response(data: Any) -> ModelResponse:
  if not isinstance(data, dict):
    return UnrecognizedShape(keys=[])
  output = data.get("output")
  if isinstance(output, list):
    for item in output:
      if not isinstance(item, dict):
        continue
      for part in item.get("content") or []:
        if isinstance(part, dict) and part.get("type") == "output_text":
          text = _content_text(part)
          if text:
            return OutputMessage(text=text)
  if isinstance(data.get("output_text"), str) and data["output_text"]:
    return OutputText(text=data["output_text"])
  choices = data.get("choices")
  if isinstance(choices, list) and choices and isinstance(choices[0], dict):
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content:
      return ChatCompletion(text=content)
  return UnrecognizedShape(keys=sorted(data.keys()))


def extract_json_object(text: str) -> Optional[str]:
  """Return the first balanced {...} block in free text, or None."""
  start = text.find("{")
  while start != -1:
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(text)):
      ch = text[i]
      if in_str:
        if escaped:
          escaped = False
        elif ch == "\\":
          escaped = True
        elif ch == '"':
          in_str = False
        continue
      if ch == '"':
        in_str = True
      elif ch == "{":
        depth += 1
      elif ch == "}":
        depth -= 1
        if depth == 0:
          return text[start:i + 1]
    # unbalanced from this brace; try the next one
    start = text.find("{", start + 1)
  return None


def parse_model_json(text: str) -> dict:
  try:
    obj = json.loads(text)
  except json.JSONDecodeError:
    block = extract_json_object(text)
    if block is None:
      logger.warning("Model did not return JSON; raw output: %s", text[:500])
      raise MalformedOutputError("Could not parse JSON from model output")
    try:
      obj = json.loads(block)
    except json.JSONDecodeError:
      logger.warning("Found JSON-like block but could not parse it: %s", block[:500])
      raise MalformedOutputError("Could not parse JSON from model output")
  if not isinstance(obj, dict):
    raise MalformedOutputError("Model output is not a JSON object")
  return obj


def build_messages(idea: str, thread: Optional[List[Any]] = None, idea_id: Optional[str] = None) -> List[dict]:
  messages = [ChatMessage("system", SYSTEM_PROMPT)]
  # recent history only; the client sends the full thread
  for m in (thread or [])[-MAX_THREAD_MESSAGES:]:
    messages.append(ChatMessage.coerce(m))
  intro = f"Idea ID: {idea_id}\n" if idea_id else ""
  messages.append(ChatMessage(
    "user",
    f"{intro}User idea:\n{idea}\n\n"
    "Return JSON ONLY that matches the provided schema. Keep the file bundle minimal but functional.",
  ))
  return [m.as_dict() for m in messages]


class ModelClient:
  """Generates an IR plus file bundle from an idea with one schema-constrained call.

  Credentials come from the environment (``OPENAI_API_KEY``); the model and base
  URL can be overridden with ``OPENAI_MODEL`` and ``OPENAI_BASE_URL``.
  """

  def __init__(self, api_key: str = None, model: str = None, base_url: str = None,
               session: requests.Session = None, max_output_tokens: int = 3500):
    self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
    self.model = model or os.environ.get("OPENAI_MODEL") or DEFAULT_MODEL
    self.base_url = (base_url or os.environ.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL).rstrip("/")
    self.session = session or requests.Session()
    self.max_output_tokens = max_output_tokens

  def _payload(self, messages: List[dict]) -> dict:
    return {
      "model": self.model,
      "input": messages,
      "text": {"format": {"type": "json_schema", "name": "mvp_bundle", "schema": MVP_SCHEMA, "strict": False}},
      "temperature": 0.3,
      "max_output_tokens": self.max_output_tokens,
    }

  def complete(self, messages: List[dict]) -> str:
    if not self.api_key:
      raise ConfigError("Missing OPENAI_API_KEY")
    headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
    url = self.base_url + "/responses"
    try:
      resp = self.session.post(url, headers=headers, json=self._payload(messages), timeout=http_timeout())
    except requests.exceptions.RequestException as e:
      logger.error("LLM request to %s failed: %s", url, e)
      raise UpstreamError(f"Model request failed: {e}", endpoint=url)
    if not 200 <= resp.status_code < 300:
      body = resp.text or ""
      logger.error("LLM request failed: status=%s body=%s", resp.status_code, body[:500])
      raise UpstreamError(f"Model HTTP {resp.status_code}: {body[:500]}", upstream_status=resp.status_code, upstream_body=body)
    try:
      data = resp.json()
    except ValueError:
      raise MalformedOutputError("Malformed JSON from model API")

    decoded = decode_response(data)
    if isinstance(decoded, UnrecognizedShape):
      logger.error("Unrecognized model response shape; keys=%s", decoded.keys)
      raise MalformedOutputError(f"Unrecognized model response shape (keys: {', '.join(decoded.keys) or 'none'})")
    logger.info("Model answered via %s (%d chars)", type(decoded).__name__, len(decoded.text))
    return decoded.text

  def generate(self, idea: str, thread: Optional[List[Any]] = None, idea_id: Optional[str] = None) -> MvpResult:
    idea = (idea or "").strip()
    if not idea:
      raise InvalidRequestError("Missing idea")

    text = self.complete(build_messages(idea, thread, idea_id))
    obj = parse_model_json(text)

    files = obj.get("files")
    if not isinstance(files, dict) or not files:
      raise MalformedOutputError("Model returned an empty file bundle")
    try:
      ir = IR.model_validate(obj.get("ir") or {})
      smoke = Smoke.model_validate(obj.get("smoke") or {})
    except ValidationError as e:
      raise MalformedOutputError(f"Model output did not match the schema: {e.errors()[0].get('msg')}")
    files = {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in files.items()}
    return MvpResult(ir=ir, files=files, smoke=smoke)
