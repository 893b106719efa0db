"""Configuration management for the ChatFlow conversational agent."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Groq Configuration
GROQ_API_KEYS = [
    key.strip() for key in os.getenv("GROQ_API_KEYS", "").split(",") if key.strip()
]
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
GROQ_MAX_TOKENS = int(os.getenv("GROQ_MAX_TOKENS", "1024"))
GROQ_TEMPERATURE = float(os.getenv("GROQ_TEMPERATURE", "0.8"))
GROQ_TIMEOUT = float(os.getenv("GROQ_TIMEOUT", "30"))  # seconds
GROQ_MAX_RETRIES = int(os.getenv("GROQ_MAX_RETRIES", "3"))
GROQ_RETRY_DELAY = float(os.getenv("GROQ_RETRY_DELAY", "1.0"))  # seconds

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# Channel Configuration
CHANNEL_WEBHOOK_URL = os.getenv("CHANNEL_WEBHOOK_URL", "http://localhost:3000")
CHANNEL_TOKEN = os.getenv("CHANNEL_TOKEN")
CHANNEL_TIMEOUT = float(os.getenv("CHANNEL_TIMEOUT", "10"))

# Bot Behavior Configuration
MAX_CHAT_HISTORY = int(os.getenv("MAX_CHAT_HISTORY", "50"))
MAX_CONTEXT_TURNS = 50  # hard cap on turns sent to the model
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "10"))
RATE_LIMIT_WINDOW_SECONDS = 60
THINKING_DELAY = float(os.getenv("THINKING_DELAY", "0"))  # seconds
BACKGROUND_WAIT_SECONDS = 2.0
MOOD_ANALYSIS = os.getenv("MOOD_ANALYSIS", "true").lower() != "false"

# Storage Configuration
CHAT_HISTORY_FILE = os.getenv("CHAT_HISTORY_FILE", "data/chat_history.json")
SAVE_DEBOUNCE_SECONDS = float(os.getenv("SAVE_DEBOUNCE_SECONDS", "5"))
SAVE_MAX_RETRIES = 3
SAVE_RETRY_DELAY = 1.0  # seconds, multiplied by attempt number
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", str(6 * 60 * 60)))
RETENTION_DAYS = int(os.getenv("RETENTION_DAYS", "30"))
RETENTION_KEEP_TURNS = int(os.getenv("RETENTION_KEEP_TURNS", "10"))
MAX_EMOTIONAL_ENTRIES = 20

# Persona Configuration
PERSONA_NAME = os.getenv("PERSONA_NAME", "Sandun")
PERSONA_TIMEZONE = os.getenv("PERSONA_TIMEZONE", "Asia/Colombo")
PERSONA_BACKGROUND = os.getenv(
    "PERSONA_BACKGROUND",
    "A friendly 17-year-old student from Colombo who chats casually, "
    "mixes Sinhala and English naturally, and genuinely cares about friends."
)

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
