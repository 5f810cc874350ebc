import re
import json
import time
import logging
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_SECONDS = 15 * 60

SECURITY_HEADERS = {
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'X-XSS-Protection': '1; mode=block',
    'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
    'Content-Security-Policy': (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://www.googletagmanager.com; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        "font-src 'self' https://fonts.gstatic.com; "
        "img-src 'self' data: https: blob:; "
        "connect-src 'self' https:; "
        "frame-ancestors 'none';"
    ),
}

_SANITIZE_RULES = [
    re.compile(r'<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'\bon\w+\s*=', re.IGNORECASE),
    re.compile(r'\beval\s*\(', re.IGNORECASE),
    re.compile(r'\bexpression\s*\(', re.IGNORECASE),
]

SUSPICIOUS_PATTERNS = [
    re.compile(r'union\s+select', re.IGNORECASE),
    re.compile(r'drop\s+table', re.IGNORECASE),
    re.compile(r'delete\s+from', re.IGNORECASE),
    re.compile(r'insert\s+into', re.IGNORECASE),
    re.compile(r'<script[^>]*>', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
    re.compile(r'vbscript:', re.IGNORECASE),
    re.compile(r'\bon\w+\s*=', re.IGNORECASE),
    re.compile(r'\beval\s*\(', re.IGNORECASE),
    re.compile(r'\bexpression\s*\(', re.IGNORECASE),
    re.compile(r'\.\./\.\./'),
    re.compile(r'etc/passwd', re.IGNORECASE),
    re.compile(r'windows/system32', re.IGNORECASE),
]

_TOKEN_PART = re.compile(r'^[A-Za-z0-9_-]+$')


def sanitize_string(value):
    """Strip common script-injection vectors from a string. Non-strings pass through."""
    if not isinstance(value, str):
        return value
    for rule in _SANITIZE_RULES:
        value = rule.sub('', value)
    return value


def sanitize_payload(data):
    """Recursively sanitize every string inside dicts and lists."""
    if isinstance(data, dict):
        return {key: sanitize_payload(value) for key, value in data.items()}
    if isinstance(data, list):
        return [sanitize_payload(item) for item in data]
    return sanitize_string(data)


def detect_suspicious_activity(url, body=None, query=None):
    """Return True when the request URL, body or query matches a known attack pattern."""
    try:
        check_string = json.dumps({'url': url, 'body': body, 'query': query}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        check_string = f'{url} {body} {query}'
    return any(pattern.search(check_string) for pattern in SUSPICIOUS_PATTERNS)


def validate_token_format(token):
    # header.payload.signature, each part base64url
    if not token:
        return False
    parts = token.split('.')
    if len(parts) != 3:
        return False
    return all(_TOKEN_PART.match(part) for part in parts)


def check_admin_whitelist(ip, whitelist):
    if not whitelist:
        return True
    return ip in whitelist


def log_security_event(event, details):
    timestamp = datetime.now(timezone.utc).isoformat()
    logger.warning(f'[SECURITY] {timestamp} - {event}: {json.dumps(details, ensure_ascii=False, default=str)}')


class LoginAttemptTracker:
    """
    Tracks failed admin logins per client IP.

    An IP is blocked once it reaches ``max_attempts`` failures; the block
    lifts when ``lockout_seconds`` have passed since the last failure.
    """

    def __init__(self, max_attempts=MAX_FAILED_ATTEMPTS, lockout_seconds=LOCKOUT_SECONDS, clock=time.time):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._attempts = {}
        self._lock = threading.Lock()

    def is_blocked(self, ip):
        with self._lock:
            entry = self._attempts.get(ip)
            if not entry:
                return False
            if self._clock() - entry['last_attempt'] > self.lockout_seconds:
                del self._attempts[ip]
                return False
            return entry['count'] >= self.max_attempts

    def record_failure(self, ip):
        with self._lock:
            entry = self._attempts.setdefault(ip, {'count': 0, 'last_attempt': 0})
            entry['count'] += 1
            entry['last_attempt'] = self._clock()
            return entry['count']

    def clear(self, ip):
        with self._lock:
            self._attempts.pop(ip, None)

    def clear_all(self):
        with self._lock:
            self._attempts.clear()
