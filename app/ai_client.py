import os
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from google import genai
from google.genai import types
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# Get API key - supports multiple env var names
API_KEY = os.environ.get("GOOGLE_CLOUD_API_KEY") or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")

# Model configuration
MODEL_NAME = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
TEMPERATURE = float(os.environ.get("GEMINI_TEMPERATURE", "0.7"))

_client = None


class AIServiceError(Exception):
    """The AI model could not produce a response."""


@dataclass
class AIResponse:
    text: str
    tokens_used: int = 0


def get_client():
    """Gemini client, created on first use."""
    global _client
    if _client is None:
        if not API_KEY:
            raise AIServiceError(
                "Missing API key. Please set GOOGLE_CLOUD_API_KEY, GEMINI_API_KEY, or GOOGLE_API_KEY in your environment."
            )
        logger.info(f"Initializing Gemini client with model: {MODEL_NAME}")
        _client = genai.Client(api_key=API_KEY)
    return _client


def _describe_error(error_msg: str) -> str:
    if "401" in error_msg or "UNAUTHENTICATED" in error_msg:
        return f"Authentication error: the API key is invalid or expired ({error_msg})"
    if "404" in error_msg or "NOT_FOUND" in error_msg:
        return f"Model '{MODEL_NAME}' is not available ({error_msg})"
    if "429" in error_msg or "RESOURCE_EXHAUSTED" in error_msg or "quota" in error_msg.lower():
        return "AI service quota exceeded. Please wait a few minutes and try again."
    return f"AI generation failed: {error_msg}"


def _extract_text(response) -> str:
    if response.text:
        return response.text

    # Fallback: try to extract from candidates
    if response.candidates and response.candidates[0].content.parts:
        return "".join(
            part.text for part in response.candidates[0].content.parts
            if getattr(part, "text", None)
        )
    return ""


async def generate_text(
    prompt: str,
    system_instruction: Optional[str] = None,
    max_tokens: int = 2000,
    json_output: bool = False,
    temperature: Optional[float] = None
) -> AIResponse:
    """
    Send a single prompt to Gemini.

    Raises AIServiceError when the client is unavailable, the call fails, or
    the model returns no content.
    """
    client = get_client()

    config = types.GenerateContentConfig(
        temperature=TEMPERATURE if temperature is None else temperature,
        max_output_tokens=max_tokens,
        system_instruction=system_instruction,
        response_mime_type="application/json" if json_output else None,
    )

    try:
        response = await client.aio.models.generate_content(
            model=MODEL_NAME,
            contents=prompt,
            config=config,
        )
    except Exception as e:
        logger.error(f"Gemini call failed: {e}", exc_info=True)
        raise AIServiceError(_describe_error(str(e)))

    text = _extract_text(response)
    if not text:
        raise AIServiceError("No content generated by AI")

    usage = getattr(response, "usage_metadata", None)
    tokens_used = getattr(usage, "candidates_token_count", None) or 0

    logger.info(f"Received response of length {len(text)} ({tokens_used} tokens)")
    return AIResponse(text=text, tokens_used=tokens_used)


def extract_json_from_response(response_text: str) -> Optional[Dict]:
    """Parse the first JSON object found in a model response, or None."""
    if not response_text:
        return None

    start = response_text.find("{")
    end = response_text.rfind("}") + 1
    if start == -1 or end <= start:
        logger.info("No JSON found in response")
        return None

    try:
        return json.loads(response_text[start:end])
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON from response: {str(e)}")
        return None


def is_configured() -> bool:
    return bool(API_KEY)
