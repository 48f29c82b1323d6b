import os

from dotenv import load_dotenv

load_dotenv()

# Verification links encoded into every QR code
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

# Blob storage for uploaded templates and generated archives
STORAGE_DIR = os.getenv("STORAGE_DIR", "outputs/storage")
STORAGE_PUBLIC_URL = os.getenv("STORAGE_PUBLIC_URL", f"{APP_URL}/files").rstrip("/")
STORAGE_FETCH_TIMEOUT_SECONDS = float(os.getenv("STORAGE_FETCH_TIMEOUT_SECONDS", "30"))

# Ledger anchoring service
LEDGER_API_URL = os.getenv("LEDGER_API_URL")
LEDGER_API_KEY = os.getenv("LEDGER_API_KEY")
LEDGER_TOPIC_ID = os.getenv("LEDGER_TOPIC_ID")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))

# OCR
OCR_LANG = os.getenv("OCR_LANG", "eng")
OCR_TIMEOUT_SECONDS = float(os.getenv("OCR_TIMEOUT_SECONDS", "30"))
COLOR_DETECTION_TIMEOUT_SECONDS = float(os.getenv("COLOR_DETECTION_TIMEOUT_SECONDS", "30"))

# Placement and composition
COLOR_TOLERANCE = int(os.getenv("COLOR_TOLERANCE", "30"))
TEXT_MARKER_PADDING = int(os.getenv("TEXT_MARKER_PADDING", "20"))
DEFAULT_QR_SIZE = int(os.getenv("DEFAULT_QR_SIZE", "200"))
MIN_QR_SIZE = 50
QR_RENDER_WIDTH = int(os.getenv("QR_RENDER_WIDTH", "600"))
BATCH_CHUNK_SIZE = int(os.getenv("BATCH_CHUNK_SIZE", "10"))
ITEM_TIMEOUT_SECONDS = float(os.getenv("ITEM_TIMEOUT_SECONDS", "60"))

# A4 in PDF points
A4_WIDTH_PT = 595
A4_HEIGHT_PT = 842

# Frontends allowed to call the API
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
