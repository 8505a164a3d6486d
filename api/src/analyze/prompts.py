import json
from hashlib import md5
from typing import Any, Dict, Optional, Tuple

URL_ANALYSIS_PROMPT_VERSION = '2.0'

REQUIRED_FIELDS = ('risk_score', 'confidence', 'primary_risks', 'scam_category', 'indicators', 'explanation')
SCAM_CATEGORIES = ('financial', 'phishing', 'ecommerce', 'social_engineering', 'legitimate')

URL_ANALYSIS_TEMPLATE = """You are an expert cybersecurity analyst specializing in URL-based scam detection. Your task is to analyze URLs for scam likelihood using pattern recognition and technical indicators.

**INPUT DATA:**
URL: {url}
Domain: {domain}
Path: {path}
Parameters: {parameters}
Technical Context: {context}

**ANALYSIS FRAMEWORK:**
Evaluate the URL systematically across these weighted dimensions:

1. **Domain Trust Analysis (High Weight):**
   - Exact/near matches to known brands (paypal -> payp4l, amazon -> amaz0n)
   - Suspicious TLD usage (.tk, .ml, .ga, .cf for non-legitimate services)
   - Domain age correlation with claimed legitimacy
   - Registrar reputation and privacy protection patterns
   - Subdomain abuse (secure-paypal.suspicious-domain.com)

2. **URL Structure Red Flags (High Weight):**
   - Login/credential harvesting patterns (login, signin, verify, update, confirm in paths)
   - Urgency indicators (urgent, expire, suspend, limited-time)
   - Obfuscation techniques (excessive URL encoding, IP addresses, URL shorteners)
   - Parameter injection patterns (redirect, continue, return_url pointing to external domains)

3. **Scam Pattern Matching (Critical):**
   - Financial: crypto-mining, investment schemes, fake banking, loan scams
   - Phishing: credential harvesting, account verification, security alerts
   - E-commerce: too-good-to-be-true deals, missing contact info, fake stores
   - Social Engineering: authority impersonation, fear/urgency tactics, prize claims

4. **Legitimacy Indicators (False Positive Prevention):**
   - Well-established domains (>2 years old) with clean reputation
   - Official company domains and verified subdomains
   - Educational, government, and established news domains
   - Major platform domains (github.com, stackoverflow.com, etc.)

**SCORING GUIDELINES:**
- 0-20: Legitimate services with strong trust indicators
- 21-40: Likely legitimate but with some suspicious elements
- 41-60: Uncertain/neutral - requires additional investigation
- 61-80: High probability scam with multiple red flags
- 81-100: Definitive scam patterns with high confidence

**OUTPUT REQUIREMENTS:**
Respond ONLY with valid JSON in this exact format:
{{
  "risk_score": <integer 0-100>,
  "confidence": <integer 0-100>,
  "primary_risks": ["<risk1>", "<risk2>", "<risk3>"],
  "scam_category": "<financial|phishing|ecommerce|social_engineering|legitimate>",
  "indicators": ["<indicator1>", "<indicator2>", "<indicator3>"],
  "explanation": "<brief 1-2 sentence explanation>"
}}

**CRITICAL INSTRUCTIONS:**
- Be conservative with legitimate services - err on the side of false negatives over false positives
- Weight domain age and reputation heavily for new domains
- Consider technical context indicators as strong supporting evidence
- Provide specific, observable indicators rather than generic assessments
- Use confidence scores to reflect uncertainty - lower confidence for borderline cases"""


def format_technical_context(context: Dict[str, Any]) -> str:
    formatted = []

    domain_age = context.get('domain_age')
    if domain_age:
        formatted.append(f"Domain Age: {domain_age.get('age_in_days')} days, "
                         f"Registrar: {domain_age.get('registrar')}")

    ssl_certificate = context.get('ssl_certificate')
    if ssl_certificate:
        formatted.append(f"SSL: {ssl_certificate.get('certificate_type')}, "
                         f"CA: {ssl_certificate.get('certificate_authority')}, "
                         f"Expires in: {ssl_certificate.get('days_until_expiry')} days")

    reputation = context.get('reputation')
    if reputation:
        status = 'Clean' if reputation.get('is_clean') else 'Flagged'
        threats = ', '.join(reputation.get('threat_types', [])) or 'none'
        formatted.append(f"Reputation: {status}, Risk: {reputation.get('risk_level')}, Threats: {threats}")

    structure = context.get('url_structure', {})
    formatted.append(
        f"URL Structure: {'IP Address' if structure.get('is_ip') else 'Domain'}, "
        f"HTTPS: {str(bool(structure.get('has_https'))).lower()}, "
        f"Path Depth: {structure.get('path_depth', 0)}, "
        f"Params: {structure.get('query_param_count', 0)}"
    )

    patterns = context.get('detected_patterns')
    if patterns:
        formatted.append(f"Pattern Signals: {', '.join(patterns)}")

    return ' | '.join(formatted)


def create_url_analysis_prompt(url: str, domain: str, path: str, parameters: Dict[str, str],
                               context: Dict[str, Any]) -> str:
    return URL_ANALYSIS_TEMPLATE.format(
        url=url,
        domain=domain,
        path=path,
        parameters=json.dumps(parameters),
        context=format_technical_context(context),
    )


def context_hash(context: Dict[str, Any]) -> str:
    return md5(json.dumps(context, sort_keys=True, default=str).encode()).hexdigest()[:16]


def generate_cache_key(url: str, context: Dict[str, Any]) -> str:
    return f'url:{url}:context:{context_hash(context)}:v{URL_ANALYSIS_PROMPT_VERSION}'


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_ai_response(content: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Parse and check the model's JSON answer. Returns ``(parsed, error)``."""
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError) as e:
        return None, f'Invalid JSON: {str(e)}'

    if not isinstance(parsed, dict):
        return None, 'Response must be a JSON object'
    for name in REQUIRED_FIELDS:
        if name not in parsed:
            return None, f'Missing required field: {name}'
    if not _is_number(parsed['risk_score']) or not 0 <= parsed['risk_score'] <= 100:
        return None, 'risk_score must be a number between 0-100'
    if not _is_number(parsed['confidence']) or not 0 <= parsed['confidence'] <= 100:
        return None, 'confidence must be a number between 0-100'
    if not isinstance(parsed['primary_risks'], list):
        return None, 'primary_risks must be an array'
    if not isinstance(parsed['indicators'], list):
        return None, 'indicators must be an array'
    if parsed['scam_category'] not in SCAM_CATEGORIES:
        return None, f"scam_category must be one of: {', '.join(SCAM_CATEGORIES)}"
    if not isinstance(parsed['explanation'], str) or len(parsed['explanation']) < 10:
        return None, 'explanation must be a string with at least 10 characters'
    return parsed, None
