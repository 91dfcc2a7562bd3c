import json
import logging

import requests

from ..config import GOOGLE_API_KEY, GEMINI_MODEL_ID

logger = logging.getLogger(__name__)


def _extract_json(response_text: str) -> dict:
    if "```json" in response_text:
        json_str = response_text.split("```json")[1].split("```")[0].strip()
    elif "{" in response_text:
        start = response_text.find("{")
        end = response_text.rfind("}") + 1
        if end <= start:
            return {}
        json_str = response_text[start:end]
    else:
        return {}
    return json.loads(json_str)


def call_gemini_json(prompt: str, system: str = None, temperature: float = 0.9, max_tokens: int = 900) -> dict:
    """
    Call Gemini API expecting JSON response.

    Args:
        prompt: Full prompt text
        system: Optional system instruction
        temperature: Higher = more varied quests (default 0.9)
        max_tokens: Max output tokens (default 900)

    Returns:
        Parsed JSON dict, or empty dict if failed
    """
    if not GOOGLE_API_KEY:
        return {}

    url = f"https://generativelanguage.googleapis.com/v1beta/models/{GEMINI_MODEL_ID}:generateContent?key={GOOGLE_API_KEY}"
    headers = {"Content-Type": "application/json"}
    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
            "responseMimeType": "application/json",
        },
    }
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}

    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=15)
        if resp.status_code != 200:
            logger.warning("Gemini returned HTTP %s", resp.status_code)
            return {}
        response_text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        return _extract_json(response_text)
    except (requests.RequestException, KeyError, IndexError, ValueError):
        logger.warning("Gemini call failed", exc_info=True)
        return {}
