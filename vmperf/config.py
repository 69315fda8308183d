import os

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
API_KEY = os.getenv("API_KEY", "dev-key")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Queue
BATCH_JOBS_QUEUE = os.getenv("BATCH_JOBS_QUEUE", "batch-jobs")
DEAD_LETTER_QUEUE = os.getenv("DEAD_LETTER_QUEUE", "batch-jobs-deadletter")
VISIBILITY_TIMEOUT_SECONDS = float(os.getenv("VISIBILITY_TIMEOUT_SECONDS", "300"))
MAX_DEQUEUE_COUNT = int(os.getenv("MAX_DEQUEUE_COUNT", "3"))
MESSAGE_TTL_SECONDS = float(os.getenv("MESSAGE_TTL_SECONDS", "604800"))
MAX_RECEIVE_MESSAGES = 32

# Result storage
RESULTS_CONTAINER = os.getenv("RESULTS_CONTAINER", "batch-results")
RESULT_TTL_HOURS = float(os.getenv("RESULT_TTL_HOURS", "24"))

# Cache
CACHE_CONTAINER = os.getenv("CACHE_CONTAINER", "resource-snapshots")
CACHE_TTL_HOURS = float(os.getenv("CACHE_TTL_HOURS", "24"))

# Processor
MAX_CONCURRENT_WORKERS = int(os.getenv("MAX_CONCURRENT_WORKERS", "3"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
IDLE_POLL_INTERVAL_SECONDS = float(os.getenv("IDLE_POLL_INTERVAL_SECONDS", "30"))
STOP_GRACE_SECONDS = float(os.getenv("STOP_GRACE_SECONDS", "60"))
START_PROCESSOR = os.getenv("START_PROCESSOR") == "1"

# Submission
MAX_ITEMS_PER_BATCH = int(os.getenv("MAX_ITEMS_PER_BATCH", "50"))

# Maintenance
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "86400"))
