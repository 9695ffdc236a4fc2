from dotenv import load_dotenv

import os

load_dotenv()

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
QUEUE_NAME = os.getenv("QUEUE_NAME", "pdf-processing")

# object storage (bucket REST API, upsert capable).
STORAGE_URL = os.getenv("STORAGE_URL", "http://localhost:54321/storage/v1")
STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "project-plans")
STORAGE_SERVICE_KEY = os.getenv("STORAGE_SERVICE_KEY", "")

# metadata store (document records).
API_URL = os.getenv("API_URL", "http://localhost:54321/rest/v1")
API_SERVICE_KEY = os.getenv("API_SERVICE_KEY", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
TMP_DIR = os.getenv("TMPDIR", "/tmp")

# queue / worker.
job_concurrency = int(os.getenv("JOB_CONCURRENCY", 2))
job_attempts = 3
job_backoff_delay_ms = 5000
remove_on_complete = 100
remove_on_fail = 500
lock_duration_ms = 10 * 60 * 1000
lock_renew_time_ms = 15 * 1000
stalled_interval_ms = 30 * 1000
rate_limit_max = 5
rate_limit_duration_ms = 60 * 1000
cleanup_interval_ms = 3600 * 1000
completed_grace_ms = 24 * 3600 * 1000
failed_grace_ms = 7 * 24 * 3600 * 1000

# document / page pipelines.
page_concurrency = int(os.getenv("PAGE_CONCURRENCY", 4))  # 8GB=2, 16GB=4, 32GB=8
tile_upload_concurrency = 10
linearize_timeout = 120
extract_timeout = 60
rasterize_timeout = 120
tiling_timeout = 300
tile_dpi = 600
preview_dpi = 150
tile_size = 512
tile_format = "jpeg"
tile_max_buffer = 100 * 1024 * 1024
preview_max_buffer = 50 * 1024 * 1024
cache_control = "31536000"

MAX_UPLOAD_BYTES = 100 * 1024 * 1024

progress = {
    "source_uploaded": 2,
    "started": 5,
    "pages_counted": 10,
    "pages_band": 80,
    "done": 100,
}

page_progress = {
    "extracted": 20,
    "rasterized": 40,
    "preview_rendered": 50,
    "preview_uploaded": 55,
    "tiled": 70,
    "tiles_uploaded": 90,
    "done": 100,
}
