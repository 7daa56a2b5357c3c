import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()  # default search
# Also load from project root and src/.env if present
_SRC_DIR = Path(__file__).resolve().parent
_ROOT_DIR = _SRC_DIR.parent
load_dotenv(_ROOT_DIR / ".env")
load_dotenv(_SRC_DIR / ".env")


def _flag(name: str, default: str) -> bool:
    return (os.getenv(name, default) or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


# OpenAI / LangChain config
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Convenience switch: When MODEL_FAMILY is set and LANGCHAIN_MODEL is absent,
# use it for the assistant model.
_MODEL_FAMILY = (os.getenv("MODEL_FAMILY") or "").strip() or None

# Base chat model selection (order of precedence):
# 1) explicit LANGCHAIN_MODEL
# 2) MODEL_FAMILY (if provided)
# 3) fallback default
LANGCHAIN_MODEL = os.getenv("LANGCHAIN_MODEL") or (_MODEL_FAMILY or "gpt-4o-mini")

TEMPERATURE = float(os.getenv("TEMPERATURE", "0.3"))

# Turn off all LangChain tracing/telemetry
os.environ["LANGCHAIN_TRACING"] = "false"
os.environ["LANGCHAIN_TRACING_V2"] = "false"
# Remove any Smith API key so no telemetry is sent
os.environ.pop("LANGSMITH_API_KEY", None)

# --- Assistant: generative tier ----------------------------------------------
# Master switch for the generative tier of extraction and phrasing. When off (or
# when no API key is configured) every turn runs on the deterministic fallback.
ENABLE_ASSISTANT_LLM = _flag("ENABLE_ASSISTANT_LLM", "true")

# Model override for the assistant only; defaults to the base chat model
ASSISTANT_MODEL = os.getenv("ASSISTANT_MODEL", LANGCHAIN_MODEL)

# Sampling temperature for the assistant model (extraction and phrasing)
try:
    ASSISTANT_TEMPERATURE = float(os.getenv("ASSISTANT_TEMPERATURE", str(TEMPERATURE)) or TEMPERATURE)
except Exception:
    ASSISTANT_TEMPERATURE = TEMPERATURE

# Upper bound (seconds) for one generative call, retries included
try:
    ASSISTANT_LLM_TIMEOUT_S = float(os.getenv("ASSISTANT_LLM_TIMEOUT_S", "8") or 8)
    if ASSISTANT_LLM_TIMEOUT_S <= 0:
        ASSISTANT_LLM_TIMEOUT_S = 8.0
except Exception:
    ASSISTANT_LLM_TIMEOUT_S = 8.0

# How many trailing utterances a turn reads (backfill + prompts)
try:
    ASSISTANT_HISTORY_WINDOW = int(os.getenv("ASSISTANT_HISTORY_WINDOW", "8") or 8)
    if ASSISTANT_HISTORY_WINDOW < 1:
        ASSISTANT_HISTORY_WINDOW = 1
    elif ASSISTANT_HISTORY_WINDOW > 20:
        ASSISTANT_HISTORY_WINDOW = 20
except Exception:
    ASSISTANT_HISTORY_WINDOW = 8

# --- Retry/Breaker -------------------------------------------------------------
# Retry/backoff policy for rate-limited model calls
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "2") or 2)
RETRY_BASE_DELAY_MS = int(os.getenv("RETRY_BASE_DELAY_MS", "250") or 250)
RETRY_MAX_DELAY_MS = int(os.getenv("RETRY_MAX_DELAY_MS", "2000") or 2000)

# Circuit breaker config for the assistant model
CB_ERROR_THRESHOLD = int(os.getenv("CB_ERROR_THRESHOLD", "3") or 3)
CB_COOL_OFF_S = int(os.getenv("CB_COOL_OFF_S", "300") or 300)
