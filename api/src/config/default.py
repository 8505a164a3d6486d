import os


def _csv(value: str):
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    # Redis Configuration
    REDIS_HOST = os.getenv('REDIS_HOST', 'redis')
    REDIS_PORT = int(os.getenv('REDIS_PORT', 6379))
    REDIS_DB = int(os.getenv('REDIS_DB', 0))
    REDIS_MAX_RETRIES = int(os.getenv('REDIS_MAX_RETRIES', 5))
    REDIS_RETRY_DELAY = float(os.getenv('REDIS_RETRY_DELAY', 2))

    # Cache Configuration
    CACHE_BACKEND = os.getenv('CACHE_BACKEND', 'redis')  # 'redis' or 'memory'
    CACHE_EXPIRATION = int(os.getenv('CACHE_EXPIRATION', 300))  # orchestration results
    CACHE_ORCHESTRATION_RESULTS = os.getenv('CACHE_ORCHESTRATION_RESULTS', 'true').lower() == 'true'
    MEMORY_CACHE_MAX_SIZE = int(os.getenv('MEMORY_CACHE_MAX_SIZE', 1000))
    WHOIS_CACHE_TTL = int(os.getenv('WHOIS_CACHE_TTL', 86400))          # 24 hours
    SSL_CACHE_TTL = int(os.getenv('SSL_CACHE_TTL', 21600))              # 6 hours
    REPUTATION_CACHE_TTL = int(os.getenv('REPUTATION_CACHE_TTL', 86400))
    AI_CACHE_TTL = int(os.getenv('AI_CACHE_TTL', 86400))

    # Cache Warming
    CACHE_WARMING_INTERVAL = int(os.getenv('CACHE_WARMING_INTERVAL', 3600))
    CACHE_WARMING_CONCURRENCY = int(os.getenv('CACHE_WARMING_CONCURRENCY', 3))
    CACHE_WARMING_URLS = _csv(os.getenv('CACHE_WARMING_URLS', ''))

    # WHOIS Configuration
    WHOIS_MAX_RETRIES = int(os.getenv('WHOIS_MAX_RETRIES', 2))
    WHOIS_RETRY_BASE_DELAY = float(os.getenv('WHOIS_RETRY_BASE_DELAY', 1.0))
    WHOIS_RETRY_MAX_DELAY = float(os.getenv('WHOIS_RETRY_MAX_DELAY', 5.0))

    # SSL Configuration
    SSL_PORT = int(os.getenv('SSL_PORT', 443))
    SSL_TIMEOUT = float(os.getenv('SSL_TIMEOUT', 5))

    # Reputation (Google Safe Browsing v4)
    GOOGLE_SAFE_BROWSING_API_KEY = os.getenv('GOOGLE_SAFE_BROWSING_API_KEY', '')
    SAFE_BROWSING_URL = os.getenv('SAFE_BROWSING_URL', 'https://safebrowsing.googleapis.com/v4')
    SAFE_BROWSING_CLIENT_ID = os.getenv('SAFE_BROWSING_CLIENT_ID', 'scam-checker')
    SAFE_BROWSING_CLIENT_VERSION = os.getenv('SAFE_BROWSING_CLIENT_VERSION', '1.0.0')
    SAFE_BROWSING_TIMEOUT = float(os.getenv('SAFE_BROWSING_TIMEOUT', 10))

    # AI Configuration
    AI_ENABLED = os.getenv('AI_ENABLED', 'true').lower() == 'true'
    AI_PROVIDER = os.getenv('AI_PROVIDER', 'openai')  # 'openai' or 'claude'
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
    CLAUDE_API_KEY = os.getenv('CLAUDE_API_KEY', '')
    OPENAI_API_URL = os.getenv('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions')
    CLAUDE_API_URL = os.getenv('CLAUDE_API_URL', 'https://api.anthropic.com/v1/messages')
    AI_MODEL = os.getenv('AI_MODEL', 'gpt-4')
    AI_MAX_TOKENS = int(os.getenv('AI_MAX_TOKENS', 1000))
    AI_TEMPERATURE = float(os.getenv('AI_TEMPERATURE', 0.1))
    AI_TIMEOUT = float(os.getenv('AI_TIMEOUT', 30))
    AI_RETRY_ATTEMPTS = int(os.getenv('AI_RETRY_ATTEMPTS', 2))
    AI_COST_THRESHOLD = float(os.getenv('AI_COST_THRESHOLD', 0.05))  # USD per analysis

    # Orchestration Configuration
    SERVICE_TIMEOUT = float(os.getenv('SERVICE_TIMEOUT', 30))
    SCORING_TIMEOUT = float(os.getenv('SCORING_TIMEOUT', 5))
    TOTAL_ANALYSIS_TIMEOUT = float(os.getenv('TOTAL_ANALYSIS_TIMEOUT', 60))
    MIN_REQUIRED_SERVICES = int(os.getenv('MIN_REQUIRED_SERVICES', 2))
    HISTORY_SIZE = int(os.getenv('HISTORY_SIZE', 100))
    ALLOW_PRIVATE_URLS = os.getenv('ALLOW_PRIVATE_URLS', 'false').lower() == 'true'

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Risk Scoring Configuration
    RISK_WEIGHTS = {
        'reputation': float(os.getenv('WEIGHT_REPUTATION', '0.40')),
        'domain_age': float(os.getenv('WEIGHT_DOMAIN_AGE', '0.25')),
        'ssl_certificate': float(os.getenv('WEIGHT_SSL', '0.20')),
        'ai_analysis': float(os.getenv('WEIGHT_AI', '0.15')),
    }

    RISK_THRESHOLDS = {
        'low_risk_max': float(os.getenv('LOW_RISK_MAX', '30')),
        'medium_risk_max': float(os.getenv('MEDIUM_RISK_MAX', '65')),
        'high_risk_min': float(os.getenv('HIGH_RISK_MIN', '70')),
    }

    MISSING_DATA_STRATEGY = os.getenv('MISSING_DATA_STRATEGY', 'redistribute')
    MISSING_DATA_DEFAULT_SCORE = float(os.getenv('MISSING_DATA_DEFAULT_SCORE', '50'))
    MISSING_FACTOR_PENALTY = float(os.getenv('MISSING_FACTOR_PENALTY', '0.1'))
    MINIMUM_CONFIDENCE = float(os.getenv('MINIMUM_CONFIDENCE', '0.5'))
    NORMALIZATION_METHOD = os.getenv('NORMALIZATION_METHOD', 'linear')
    SCORING_HISTORY_SIZE = int(os.getenv('SCORING_HISTORY_SIZE', 1000))
