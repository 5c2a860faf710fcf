import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load environment variables from a .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        The arq worker reads REDIS_URL while building WorkerSettings, before
        pydantic-settings would see the .env file.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
