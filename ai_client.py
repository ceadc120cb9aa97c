# ai_client.py — hosted LLM (Gemini generateContent over REST)
import json
import os
import re
from typing import Any, Dict, List, Optional

import requests

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_MODEL = "gemini-2.5-flash"


class AIError(RuntimeError):
    pass


class AIClient:
    def __init__(self, api_key: Optional[str], model: str = DEFAULT_MODEL,
                 timeout: float = 60, session: Optional[requests.Session] = None):
        self.api_key = (api_key or "").strip()
        self.model = model or DEFAULT_MODEL
        self.timeout = timeout
        self._http = session or requests.Session()

    @classmethod
    def from_env(cls) -> "AIClient":
        key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
        if not key:
            print("[ai] GEMINI_API_KEY is not set; AI features will fail.", flush=True)
        return cls(
            key,
            model=(os.getenv("GEMINI_MODEL") or DEFAULT_MODEL).strip(),
            timeout=float(os.getenv("AI_TIMEOUT_SEC") or 60),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    # ---- transport -----------------------------------------------------------
    def _generate(self, body: Dict[str, Any]) -> str:
        if not self.api_key:
            raise AIError("GEMINI_API_KEY is not set.")
        try:
            r = self._http.post(
                GEMINI_ENDPOINT.format(model=self.model),
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=body,
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
        except requests.RequestException as e:
            raise AIError(f"AI request failed: {e}") from e
        except ValueError as e:
            raise AIError("AI response was not JSON.") from e

        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise AIError(f"AI returned no candidates{f' ({reason})' if reason else ''}.")
        parts = ((candidates[0].get("content") or {}).get("parts")) or []
        text = "".join(str(p.get("text") or "") for p in parts).strip()
        if not text:
            raise AIError("AI returned an empty answer.")
        return text

    # ---- public --------------------------------------------------------------
    def generate_text(self, prompt: str, system: Optional[str] = None,
                      history: Optional[List[Dict[str, str]]] = None) -> str:
        contents = []
        for msg in history or []:
            role = "user" if msg.get("sender") == "user" else "model"
            contents.append({"role": role, "parts": [{"text": str(msg.get("text") or "")}]})
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        body: Dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return self._generate(body)

    def chat_turn(self, history: Optional[List[Dict[str, str]]], text: str,
                  system: Optional[str] = None, preamble: str = "",
                  send_history: bool = True, limit: int = 20,
                  error_text: str = "Maaf, terjadi kesalahan. Coba lagi nanti.") -> List[Dict[str, str]]:
        """One user message in, one AI message out; returns the trimmed history.
        AI failures become an apology message instead of an exception."""
        history = list(history or [])
        try:
            reply = self.generate_text(preamble + text, system=system,
                                       history=history if send_history else None)
        except AIError as e:
            print(f"[ai] chat turn failed: {e}")
            reply = error_text
        history.append({"sender": "user", "text": text})
        history.append({"sender": "ai", "text": reply})
        return history[-max(2, int(limit)):]

    def generate_json(self, prompt: str, schema: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        config: Dict[str, Any] = {"responseMimeType": "application/json"}
        if schema:
            config["responseSchema"] = schema
        content = self._generate({
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": config,
        })
        try:
            return json.loads(content)
        except ValueError:
            m = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", content, re.DOTALL)
            try:
                return json.loads(m.group(1) if m else content)
            except ValueError as e:
                raise AIError("AI returned invalid JSON.") from e
