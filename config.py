import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Where the prescription data lives on disk
STORAGE_PATH: str = os.environ.get("RX_STORAGE_PATH", "prescription_data.json")

# Same order of magnitude as a browser's local storage quota. 0 disables the limit.
STORAGE_QUOTA_BYTES: int = int(os.environ.get("RX_STORAGE_QUOTA_BYTES", 5 * 1024 * 1024))

API_KEY_NAME = "X-API-KEY"  # Standard header name for API keys

HOST: str = os.environ.get("HOST", "127.0.0.1")
PORT: int = int(os.environ.get("PORT", 8000))


def get_api_key_setting():
    """Read at request time so a changed environment takes effect without a restart."""
    return os.getenv("API_KEY")
