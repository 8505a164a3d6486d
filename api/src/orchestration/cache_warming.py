import asyncio
import threading
import time
from typing import Dict, List, Optional

import schedule

from config.default import Config
from orchestration.orchestrator import AnalysisOrchestrator
from utils.logger import setup_logger

logger = setup_logger('cache_warming')


class CacheWarmer:
    """Keeps a fixed list of URLs warm in the orchestration cache."""

    def __init__(self, orchestrator: AnalysisOrchestrator, urls: List[str] = None, interval: int = None,
                 concurrency: int = None):
        self.orchestrator = orchestrator
        self.urls = list(Config.CACHE_WARMING_URLS if urls is None else urls)
        self.interval = interval or Config.CACHE_WARMING_INTERVAL
        self.concurrency = concurrency or Config.CACHE_WARMING_CONCURRENCY
        self.scheduler = schedule.Scheduler()
        self.last_report: Optional[Dict] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def warm(self, urls: List[str] = None) -> Dict:
        """Warm ``urls`` (or the configured list) on a fresh event loop."""
        urls = self.urls if urls is None else urls
        if not urls:
            return {'total': 0, 'warmed': 0, 'failed': {}, 'duration_ms': 0.0}
        report = asyncio.run(self.orchestrator.warm_cache(urls, concurrency=self.concurrency))
        self.last_report = report
        return report

    def _scheduled_warm(self) -> None:
        try:
            self.warm()
        except Exception as e:
            logger.error(f"Scheduled cache warming failed: {str(e)}")

    def start(self, poll_interval: float = 60) -> None:
        if self._thread and self._thread.is_alive():
            return
        if not self.urls:
            logger.info('No cache warming URLs configured, background warming disabled')
            return

        def run_schedule():
            while not self._stop.is_set():
                self.scheduler.run_pending()
                time.sleep(poll_interval)

        self.scheduler.every(self.interval).seconds.do(self._scheduled_warm)
        self._scheduled_warm()  # Initial warm

        self._stop.clear()
        self._thread = threading.Thread(target=run_schedule, daemon=True)
        self._thread.start()
        logger.info(f"Cache warming scheduled every {self.interval}s for {len(self.urls)} URLs")

    def stop(self) -> None:
        self._stop.set()
        self.scheduler.clear()
