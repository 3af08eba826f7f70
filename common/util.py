import asyncio, contextlib, json, math, os, sys, threading, time
from collections import Counter, defaultdict, deque

from common.errors import ConfigurationError, RateLimitInternalError

# ---- Sliding-window limiter for outbound calls (agent side) ----
class SlidingWindowLimiter:
    """At most `limit` call starts within any trailing `interval` seconds.

    Waiters queue on one fair lock, so capacity is handed out in arrival
    order and nobody is ever rejected. `max_in_flight` additionally bounds
    calls running at the same time; it is taken before the window slot so
    the recorded start is the moment the call really starts.
    """
    def __init__(self, limit=10, interval=1.0, max_in_flight=None, clock=time.monotonic):
        if limit is None or limit < 1:
            raise ConfigurationError(f"rate limit must be >= 1, got {limit}")
        if interval is None or interval <= 0:
            raise ConfigurationError(f"rate interval must be > 0, got {interval}")
        if max_in_flight is not None and max_in_flight < 1:
            raise ConfigurationError(f"max in-flight calls must be >= 1, got {max_in_flight}")
        self.limit, self.interval, self.clock = limit, interval, clock
        self.max_in_flight = max_in_flight
        self.starts = deque()
        self.lock = asyncio.Lock()
        self.in_flight = asyncio.Semaphore(max_in_flight) if max_in_flight else None

    def _prune(self, now):
        while self.starts and now - self.starts[0] >= self.interval:
            self.starts.popleft()

    async def acquire(self):
        async with self.lock:
            while True:
                now = self.clock()
                self._prune(now)
                if len(self.starts) > self.limit:
                    raise RateLimitInternalError(
                        f"{len(self.starts)} starts recorded in a window of limit {self.limit}")
                if len(self.starts) < self.limit:
                    self.starts.append(now)
                    return now
                await asyncio.sleep(self.interval - (now - self.starts[0]))

    @contextlib.asynccontextmanager
    async def permit(self):
        async with (self.in_flight or contextlib.nullcontext()):
            await self.acquire()
            yield

# ---- Token-bucket throttle (per route+client, service side) ----
class TokenBucket:
    """`capacity` tokens, refilled at `rate` per second."""
    def __init__(self, capacity, rate, clock=time.monotonic):
        self.capacity, self.rate, self.clock = capacity, rate, clock
        self.tokens, self.updated = float(capacity), clock()
        self.lock = threading.Lock()

    def retry_after(self):
        """Takes a token and returns 0, or returns the seconds until one is due."""
        with self.lock:
            now = self.clock()
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            if self.tokens >= 1:
                self.tokens -= 1
                return 0.0
            return max(0.05, (1 - self.tokens) / self.rate) if self.rate > 0 else 1.0

class RouteThrottle:
    def __init__(self, cap=50, refill=25.0, clock=time.monotonic):
        self.buckets = defaultdict(lambda: TokenBucket(cap, refill, clock))
    def retry_after(self, route, client):
        return self.buckets[(route, client)].retry_after()

# ---- Call counters and latency percentiles ----
def percentile(ordered, p):
    return ordered[min(len(ordered) - 1, math.ceil(p * (len(ordered) - 1)))]

def latency_stats(ordered):
    return {"count": len(ordered), "p50": percentile(ordered, 0.50), "p95": percentile(ordered, 0.95),
            "p99": percentile(ordered, 0.99), "max": ordered[-1]}

class Metrics:
    """Thread-safe; the registry handlers and the agent tasks share one instance each."""
    def __init__(self, keep=10000):
        self.counters = Counter()
        self.samples = defaultdict(lambda: deque(maxlen=keep))
        self.lock = threading.Lock()
    def inc(self, key, n=1):
        with self.lock: self.counters[key] += n
    def observe(self, key, ms):
        with self.lock: self.samples[key].append(ms)
    def snapshot(self):
        with self.lock:
            counters = dict(self.counters)
            samples = {key: sorted(s) for key, s in self.samples.items() if s}
        return {"counters": counters, "latency": {key: latency_stats(s) for key, s in samples.items()}}

def json_log(stream=None, **kw):
    if os.environ.get("JSON_LOG", "1") == "0":
        return
    print(json.dumps(kw, separators=(",",":"), default=str), file=stream or sys.stdout, flush=True)
