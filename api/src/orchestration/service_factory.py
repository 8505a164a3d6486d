from typing import Dict, Optional

import requests

from analyze.ai_analyzer import AIURLAnalyzer
from analyze.ai_client import AIClient, AIClientSettings
from analyze.pattern_detector import URLPatternDetector
from analyze.ssl_analyzer import SSLAnalyzer
from analyze.whois_analyzer import WhoisAnalyzer
from config.default import Config
from orchestration.orchestrator import AnalysisOrchestrator, OrchestratorSettings
from scoring.calculator import ScoringCalculator
from scoring.config_manager import ScoringConfigManager
from threat_intel.safe_browsing import SafeBrowsingAnalyzer
from utils.cache import CacheBackend, CacheManager, create_cache_backend
from utils.logger import setup_logger

logger = setup_logger('service_factory')


def build_caches(backend: CacheBackend) -> Dict[str, CacheManager]:
    return {
        'orchestration': CacheManager(backend, 'orchestration', Config.CACHE_EXPIRATION),
        'reputation': CacheManager(backend, 'reputation', Config.REPUTATION_CACHE_TTL),
        'whois': CacheManager(backend, 'whois', Config.WHOIS_CACHE_TTL),
        'ssl': CacheManager(backend, 'ssl', Config.SSL_CACHE_TTL),
        'ai': CacheManager(backend, 'ai', Config.AI_CACHE_TTL),
    }


def build_orchestrator(backend: Optional[CacheBackend] = None, session: requests.Session = None,
                       settings: OrchestratorSettings = None) -> AnalysisOrchestrator:
    """Construct every analyzer once and wire them into an orchestrator."""
    backend = backend or create_cache_backend()
    session = session or requests.Session()
    caches = build_caches(backend)

    reputation = SafeBrowsingAnalyzer(caches['reputation'], session=session)
    whois_analyzer = WhoisAnalyzer(caches['whois'])
    ssl_analyzer = SSLAnalyzer(caches['ssl'])
    ai_analyzer = AIURLAnalyzer(
        AIClient(AIClientSettings.from_config(), session=session),
        caches['ai'],
        detector=URLPatternDetector(),
    )
    calculator = ScoringCalculator(ScoringConfigManager())

    orchestrator = AnalysisOrchestrator(
        reputation=reputation,
        whois=whois_analyzer,
        ssl=ssl_analyzer,
        ai=ai_analyzer,
        calculator=calculator,
        cache=caches.pop('orchestration'),
        settings=settings,
        service_caches=caches,
    )
    logger.info(f"Analysis services built on the {backend.name} cache backend")
    return orchestrator
