"""Application configuration loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
DB_PATH = DATA_DIR / "bridge_scraper.db"
DOWNLOAD_DIR = Path(os.getenv("DOWNLOAD_DIR", DATA_DIR / "downloads"))
LOG_DIR = DATA_DIR / "logs"

# Session manager service
SESSION_MANAGER_HOST = os.getenv("SESSION_MANAGER_HOST", "127.0.0.1")
SESSION_MANAGER_PORT = int(os.getenv("SESSION_MANAGER_PORT", "8025"))
SESSION_MANAGER_URL = f"http://{SESSION_MANAGER_HOST}:{SESSION_MANAGER_PORT}"

# Browser
BROWSER_ENGINE = os.getenv("BROWSER_ENGINE", "camoufox").lower()  # camoufox | chromium
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "true").lower() == "true"
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "60000"))
BROWSER_EXECUTABLE = os.getenv("CHROME_PATH") or os.getenv("CHROMIUM_PATH") or None
BROWSER_DEBUG = os.getenv("BROWSER_DEBUG", "false").lower() == "true"

# Idle detection (seconds)
NETWORK_IDLE_TIMEOUT = float(os.getenv("NETWORK_IDLE_TIMEOUT", "30"))
NETWORK_IDLE_CHECK_INTERVAL = float(os.getenv("NETWORK_IDLE_CHECK_INTERVAL", "0.5"))
DOM_STABLE_TIMEOUT = float(os.getenv("DOM_STABLE_TIMEOUT", "10"))
DOM_STABLE_CHECK_INTERVAL = float(os.getenv("DOM_STABLE_CHECK_INTERVAL", "0.3"))

# Bridged calls (seconds)
BRIDGE_TIMEOUT = float(os.getenv("BRIDGE_TIMEOUT", "60"))
BRIDGE_POLL_INTERVAL = float(os.getenv("BRIDGE_POLL_INTERVAL", "0.5"))

# Downloads
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "30"))
DOWNLOAD_MIN_BYTES = int(os.getenv("DOWNLOAD_MIN_BYTES", "0"))

# Retry
SCRAPER_MAX_RETRIES = int(os.getenv("SCRAPER_MAX_RETRIES", "3"))
SCRAPER_INITIAL_BACKOFF_MS = int(os.getenv("SCRAPER_INITIAL_BACKOFF_MS", "1000"))
SCRAPER_RETRY_JITTER = float(os.getenv("SCRAPER_RETRY_JITTER", "0"))

# Upstream forwarding (disabled when FORWARD_URL is empty)
FORWARD_URL = os.getenv("FORWARD_URL", "")
FORWARD_ORGANIZATION_ID = os.getenv("FORWARD_ORGANIZATION_ID", "")
FORWARD_TIMEOUT = float(os.getenv("FORWARD_TIMEOUT", "30"))

# Saved session cookies older than this are not replayed
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", "3600"))


def ensure_dirs():
    """Create required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DOWNLOAD_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
