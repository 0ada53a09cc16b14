import os

# Base directory
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Paths
LOG_FILE = os.path.join(BASE_DIR, "launch.log")
QUOTA_STORE_PATH = os.getenv("QUOTA_STORE_PATH", os.path.join(BASE_DIR, "free_quota.json"))

# Server
DEFAULT_HOST = os.getenv("HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))  # 1 hour

# Question bank / finance / session backend
API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "15.0"))

# Text generation (OpenAI-compatible endpoint, DeepSeek by default)
AI_API_KEY = os.getenv("DEEPSEEK_API_KEY", "")
AI_BASE_URL = os.getenv("AI_BASE_URL", "https://api.deepseek.com/v1")
MODEL_NAME = os.getenv("MODEL_NAME", "deepseek-chat")

# OCR
OCR_SPACE_API_KEY = os.getenv("OCR_SPACE_API_KEY", "")
OCR_SPACE_URL = "https://api.ocr.space/parse/image"
MAX_UPLOAD_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_PDF_PAGES = 20
VISION_DPI = 200

# Pricing (₦)
FREE_QUESTIONS_LIMIT = 2
CHECK_ANSWER_PRICE = 15
EXPLANATION_PRICE = 20
GENERATE_EXAMPLE_PRICE = 20
SUBMIT_TEST_PRICE = 25

# Test setup bounds
MIN_TEST_QUESTIONS = 1
MAX_TEST_QUESTIONS = 100
DEFAULT_TEST_QUESTIONS = 60
MIN_TIME_MINUTES = 1
MAX_TIME_MINUTES = 240
DEFAULT_TIME_MINUTES = 60

# Delay before an answer-check result is revealed (seconds)
CHECK_ANSWER_DELAY = float(os.getenv("CHECK_ANSWER_DELAY", "0.5"))
