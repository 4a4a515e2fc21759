import os
from datetime import time
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

DATA_DIR = Path(os.getenv("MARKETCACHE_DATA_DIR", "data"))

SQLITE_URL = f"sqlite:///{DATA_DIR / 'marketcache.db'}"
POSTGRES_URL = "postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}".format(
    user=os.getenv("MARKETCACHE_DB_USER", "marketcache"),
    password=os.getenv("MARKETCACHE_DB_PASSWORD", "marketcache"),
    host=os.getenv("MARKETCACHE_DB_HOST", "localhost"),
    port=os.getenv("MARKETCACHE_DB_PORT", "5432"),
    name=os.getenv("MARKETCACHE_DB_NAME", "marketcache"),
)

DB_TYPE = os.getenv("MARKETCACHE_DB_TYPE", "sqlite")
# Takes precedence over DB_TYPE when set
DATABASE_URL = os.getenv("MARKETCACHE_DATABASE_URL")

MARKET_TZ = ZoneInfo(os.getenv("MARKETCACHE_MARKET_TZ", "America/New_York"))
MARKET_OPEN = time(9, 30)

# Pause between source calls in a batch; the source publishes no rate limit
REQUEST_DELAY_SECONDS = float(os.getenv("MARKETCACHE_REQUEST_DELAY", "0.1"))
SOURCE_TIMEOUT_SECONDS = 10

AGGREGATION_WINDOW_MONTHS = int(os.getenv("MARKETCACHE_AGGREGATION_WINDOW_MONTHS", "12"))
DERIVE_WEEKLY_FROM_DAILY = os.getenv("MARKETCACHE_DERIVE_WEEKLY", "false").lower() in ("1", "true", "yes")

UPSERT_CHUNK_SIZE = 500

DEFAULT_SYMBOLS = [
    "AAPL", "GOOGL", "MSFT", "AMZN", "TSLA", "META", "NVDA",
    "SNOW", "IBM", "WDAY", "JPM", "V", "DIS", "NFLX", "AMD",
]
DEFAULT_INTERVALS = ["1day", "1week", "1month", "5min", "15min", "60min"]
