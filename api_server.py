import fcntl
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

# Configure logging to write to both stderr and a file immediately.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stderr),
        logging.FileHandler("api_server.log", mode="a"),
    ],
)
logger = logging.getLogger("api_server")


def _load_local_env() -> None:
    """
    Load local environment variables from config/secrets.env (if present).

    Keeps `python api_server.py` consistent with `python main.py` for local development.
    """
    env_path = Path(__file__).resolve().parent / "config" / "secrets.env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment variables from %s", env_path)


def main() -> None:
    _load_local_env()

    # Single instance only: the API process owns the ledger and the scheduler.
    lock_path = Path(".api_server.lock")
    try:
        lock_f = lock_path.open("w")
        fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        lock_f.write(str(os.getpid()))
        lock_f.flush()
    except OSError:
        logger.error("Another API instance appears to be running (lockfile busy). Exiting.")
        sys.exit(1)

    host = os.environ.get("AIQUANT_API_HOST", "127.0.0.1")
    port = int(os.environ.get("AIQUANT_API_PORT", "8000"))
    try:
        logger.info(f"Starting AI Quant API server on {host}:{port}")
        uvicorn.run(
            "aiquant.api.app:create_server_app",
            factory=True,
            host=host,
            port=port,
            reload=False,
            log_level="info",
            workers=1,  # One process: the ledger lives in memory
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration invalid: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error in API server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
