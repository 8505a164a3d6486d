import time

import redis

from config.default import Config
from utils.logger import setup_logger

logger = setup_logger('redis_client')


def get_redis_client(max_retries: int = None, retry_delay: float = None) -> redis.Redis:
    """Connect to Redis, retrying until the server answers a PING.

    Values are stored pickled, so the client keeps raw bytes
    (``decode_responses=False``).
    """
    max_retries = max_retries or Config.REDIS_MAX_RETRIES
    retry_delay = Config.REDIS_RETRY_DELAY if retry_delay is None else retry_delay

    for attempt in range(max_retries):
        try:
            client = redis.Redis(
                host=Config.REDIS_HOST,
                port=Config.REDIS_PORT,
                db=Config.REDIS_DB,
                decode_responses=False,
                socket_timeout=5,
                socket_connect_timeout=5
            )
            client.ping()
            logger.info(f"Connected to Redis at {Config.REDIS_HOST}:{Config.REDIS_PORT}")
            return client
        except redis.ConnectionError as e:
            if attempt == max_retries - 1:
                logger.error(f"Failed to connect to Redis after {max_retries} attempts: {str(e)}")
                raise
            logger.warning(
                f"Redis connection attempt {attempt + 1}/{max_retries} failed, "
                f"retrying in {retry_delay} seconds..."
            )
            time.sleep(retry_delay)
