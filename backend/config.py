import os
import logging
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Storage
MONGO_URL = os.environ.get("MONGO_URL", "")
DB_NAME = os.environ.get("DB_NAME", "eagleview")
DATA_DIR = Path(os.environ.get("DATA_DIR", str(ROOT_DIR / "data")))

# Auth Configuration
SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "fallback_secret_key_change_in_production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 30  # 30 days
MIN_PASSWORD_LENGTH = 6

# Vision model
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
VISION_MODEL = os.environ.get("VISION_MODEL", "gpt-4o")
FOLLOWUP_MODEL = os.environ.get("FOLLOWUP_MODEL", "gpt-4o-mini")
VISION_TIMEOUT_SECONDS = float(os.environ.get("VISION_TIMEOUT_SECONDS", "45"))

# Speech
TTS_MODEL = os.environ.get("TTS_MODEL", "tts-1")
TTS_VOICE = os.environ.get("TTS_VOICE", "nova")  # Warm, friendly voice good for elderly
TTS_SPEED = 0.9
TTS_MAX_CHARS = 4000

# Session reconciliation
PROFILE_FETCH_ATTEMPTS = int(os.environ.get("PROFILE_FETCH_ATTEMPTS", "4"))
PROFILE_FETCH_DELAY_MS = int(os.environ.get("PROFILE_FETCH_DELAY_MS", "800"))
NOTE_READOUT_DELAY_MS = int(os.environ.get("NOTE_READOUT_DELAY_MS", "1500"))
HISTORY_PAGE_SIZE = int(os.environ.get("HISTORY_PAGE_SIZE", "50"))
PREFS_POLL_SECONDS = float(os.environ.get("PREFS_POLL_SECONDS", "2"))

# Capture
CAPTURE_DEBOUNCE_MS = int(os.environ.get("CAPTURE_DEBOUNCE_MS", "400"))
CAPTURE_MAX_EDGE_PX = 1600
CAPTURE_JPEG_QUALITY = 80

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
