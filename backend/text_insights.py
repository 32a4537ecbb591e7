# LLM-based sentiment summary for open-ended survey answers
from __future__ import annotations
import json
import logging
from openai import OpenAI, APIConnectionError, APIStatusError, RateLimitError

from config import OPENAI_API_KEY, LLM_MODEL

logger = logging.getLogger(__name__)

_client = None
if OPENAI_API_KEY:
    _client = OpenAI(api_key=OPENAI_API_KEY)

# answers sent to the model per question; the rest are only counted
_MAX_ANSWERS = 200

POSITIVE_KEYWORDS = ["iyi", "güzel", "memnun", "başarılı", "harika", "excellent", "good", "great", "happy", "helpful"]
NEGATIVE_KEYWORDS = ["kötü", "berbat", "memnun değil", "başarısız", "poor", "bad", "terrible", "sad", "unhelpful"]

_HEURISTIC_MSG = "Keyword heuristic (no LLM analysis)."


def _overall(positive: int, negative: int) -> str:
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def _heuristic(answers: list[str]) -> dict:
    positive = negative = neutral = 0
    for text in answers:
        low = text.lower()
        has_neg = any(k in low for k in NEGATIVE_KEYWORDS)
        # negative phrases can embed positive words ("unhelpful", "memnun değil")
        for k in NEGATIVE_KEYWORDS:
            low = low.replace(k, " ")
        has_pos = any(k in low for k in POSITIVE_KEYWORDS)
        if has_pos and not has_neg:
            positive += 1
        elif has_neg and not has_pos:
            negative += 1
        else:
            neutral += 1
    return {
        "positive": positive,
        "negative": negative,
        "neutral": neutral,
        "overall": _overall(positive, negative),
        "summary": _HEURISTIC_MSG,
        "source": "heuristic",
    }


def analyze_open_answers(question_text: str, answers: list[str]) -> dict:
    """
    Return sentiment counts and a short summary for one question's answers.
    Falls back to the keyword heuristic if:
    - no OPENAI_API_KEY
    - API errors / rate limits / malformed output
    """
    answers = [a for a in answers if a and a.strip()]
    if not answers:
        return {"positive": 0, "negative": 0, "neutral": 0, "overall": "neutral", "summary": "", "source": "none"}

    if not _client:
        return _heuristic(answers)

    sample = answers[:_MAX_ANSWERS]
    numbered = "\n".join(f"{i}. {a}" for i, a in enumerate(sample, 1))
    try:
        resp = _client.chat.completions.create(
            model=LLM_MODEL,
            temperature=0.0,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": (
                    "You analyse student survey answers for a school counselor. Output ONLY JSON: "
                    '{"positive": int, "negative": int, "neutral": int, "summary": string}. '
                    "Counts classify each answer once and must add up to the number of answers. "
                    "The summary is 1-3 sentences on recurring themes."
                )},
                {"role": "user", "content": f"QUESTION:\n{question_text}\n\nANSWERS:\n{numbered}\n"},
            ],
        )
        data = json.loads(resp.choices[0].message.content)
        positive = int(data["positive"])
        negative = int(data["negative"])
        neutral = int(data["neutral"])
        return {
            "positive": positive,
            "negative": negative,
            "neutral": neutral,
            "overall": _overall(positive, negative),
            "summary": str(data.get("summary", "")).strip(),
            "source": "llm",
        }
    except (RateLimitError, APIStatusError, APIConnectionError, KeyError, ValueError, TypeError, json.JSONDecodeError):
        # Any issue -> degrade gracefully
        logger.exception("LLM analysis failed; using keyword heuristic")
        return _heuristic(answers)
