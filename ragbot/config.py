import os
from typing import List

from dotenv import load_dotenv
from pathlib import Path

# Load environment variables from .env file with explicit path
load_dotenv(dotenv_path=Path(__file__).parent.parent / '.env')

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly WhatsApp assistant. Answer briefly and in the user's language. "
    "When a knowledge base context is provided, ground your answer in it and cite the "
    "relevant source links. If you do not know the answer, say so."
)

# OpenAI Configuration
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
OPENAI_MAX_CONTEXT_TOKENS = int(os.getenv("OPENAI_MAX_CONTEXT_TOKENS", "6000"))
SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)

# ChromaDB Configuration
# CHROMA_MODE selects the client: "cloud" (Chroma Cloud), "http" (self-hosted server)
# or "persistent" (local directory).
CHROMA_MODE = os.getenv("CHROMA_MODE", "cloud").lower()
CHROMA_API_KEY = os.getenv("CHROMA_API_KEY")
CHROMA_TENANT = os.getenv("CHROMA_TENANT")
CHROMA_DATABASE = os.getenv("CHROMA_DATABASE")
CHROMA_HOST = os.getenv("CHROMA_HOST", "localhost")
CHROMA_PORT = int(os.getenv("CHROMA_PORT", "8000"))
CHROMA_PERSIST_DIR = os.getenv("CHROMA_PERSIST_DIR", str(Path(__file__).parent / "rag" / "chroma_db"))
CHROMA_COLLECTION = os.getenv("CHROMA_COLLECTION", "knowledge-base")
CHROMA_MAX_RESULTS = int(os.getenv("CHROMA_MAX_RESULTS", "5"))
CHROMA_MAX_CHARACTERS = int(os.getenv("CHROMA_MAX_CHARACTERS", "1500"))

# Twilio Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
TWILIO_MESSAGING_SERVICE_SID = os.getenv("TWILIO_MESSAGING_SERVICE_SID")
TWILIO_API_URL = os.getenv("TWILIO_API_URL", "https://api.twilio.com")

# Webhook Configuration
TWILIO_VALIDATE_SIGNATURE = os.getenv("TWILIO_VALIDATE_SIGNATURE", "false").lower() == "true"
# Public URL Twilio calls; needed for signature validation behind proxies
PUBLIC_WEBHOOK_URL = os.getenv("PUBLIC_WEBHOOK_URL")

# Wire in-process fakes for OpenAI, Chroma and Twilio (local runs and tests)
USE_FAKE_CLIENTS = os.getenv("USE_FAKE_CLIENTS", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def validate_config() -> List[str]:
    """Return a list of configuration problems. Never raises."""
    if USE_FAKE_CLIENTS:
        return []

    problems = []
    if not OPENAI_API_KEY:
        problems.append("OPENAI_API_KEY is not set")
    if not TWILIO_ACCOUNT_SID.startswith("AC"):
        problems.append("TWILIO_ACCOUNT_SID must start with AC")
    if not TWILIO_AUTH_TOKEN:
        problems.append("TWILIO_AUTH_TOKEN is not set")
    if TWILIO_PHONE_NUMBER and not TWILIO_PHONE_NUMBER.startswith("whatsapp:"):
        problems.append("TWILIO_PHONE_NUMBER must be in WhatsApp format (whatsapp:+...)")
    if not TWILIO_PHONE_NUMBER and not TWILIO_MESSAGING_SERVICE_SID:
        problems.append("Either TWILIO_PHONE_NUMBER or TWILIO_MESSAGING_SERVICE_SID must be provided")
    if CHROMA_MODE == "cloud" and not CHROMA_API_KEY:
        problems.append("CHROMA_API_KEY is required when CHROMA_MODE=cloud")
    return problems
