import uvicorn

from constants import HOST, LOG_FILE, LOG_LEVEL, PORT
from logging_config import get_logger, setup_logging

# Setup logging before importing app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

from app import app  # noqa: E402

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting AvailRoom server on {HOST}:{PORT}")
    # One worker: the in-memory store is the single authority.
    uvicorn.run(app, host=HOST, port=PORT, workers=1, log_config=None)
