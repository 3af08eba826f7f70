import os

API_BASE = os.environ.get("JOBS_API_BASE", "http://localhost:8000")
BACKEND = os.environ.get("JOBS_AGENT_BACKEND", "http")
THING_PREFIX = os.environ.get("JOBS_THING_PREFIX", "jobs-thing")

RATE_LIMIT = int(os.environ.get("JOBS_RATE_LIMIT", "10"))
RATE_INTERVAL_S = float(os.environ.get("JOBS_RATE_INTERVAL_S", "1.0"))
MAX_IN_FLIGHT = int(os.environ.get("JOBS_MAX_IN_FLIGHT", "5"))
HTTP_RETRIES = int(os.environ.get("JOBS_HTTP_RETRIES", "3"))
HTTP_TIMEOUT_S = float(os.environ.get("JOBS_HTTP_TIMEOUT_S", "5.0"))

DEFAULT_FAILURE_RATE = 0
DEFAULT_MIN_DELAY_MS = 100
DEFAULT_MAX_DELAY_MS = 10000

def aws_region(env=None):
    env = os.environ if env is None else env
    return env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION")

def proxy_url(env=None):
    """HTTPS proxy wins over HTTP; lower-case variants are honoured too."""
    env = os.environ if env is None else env
    https = env.get("HTTPS_PROXY") or env.get("https_proxy")
    http = env.get("HTTP_PROXY") or env.get("http_proxy")
    return https or http
