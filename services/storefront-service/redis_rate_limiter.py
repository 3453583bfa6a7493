"""Redis-backed rate limiter shared by all service instances."""
import logging
import time
import uuid
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config import API_TOKENS, RATE_LIMIT_PER_MINUTE_IP, RATE_LIMIT_PER_MINUTE_USER
from monitoring import rate_limit_exceeded_counter, suspicious_activity_counter

logger = logging.getLogger(__name__)

# (status filter, key suffix, threshold, activity type)
SUSPICIOUS_PATTERNS = (
    (lambda status: status == 401, "401", 5, "credential_stuffing"),
    (lambda status: status == 404, "404", 10, "endpoint_scanning"),
    (lambda status: 400 <= status < 500, "4xx", 20, "abuse"),
)


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Sliding-window rate limiting per client IP and per signed-in user.

    Counters are sorted sets in Redis, so limits hold across restarts and
    across every instance behind the load balancer. When Redis is down the
    limiter lets requests through.

    The IP limit is higher than the user limit because shoppers behind one
    carrier NAT share an address.
    """

    def __init__(
        self,
        app,
        redis_client: redis.Redis,
        requests_per_minute_ip: int = RATE_LIMIT_PER_MINUTE_IP,
        requests_per_minute_user: int = RATE_LIMIT_PER_MINUTE_USER,
        window_seconds: int = 60,
        exempt_paths: Tuple[str, ...] = ("/health", "/payments/callback")
    ):
        """
        Initialize Redis-backed rate limiter.

        Args:
            app: FastAPI application
            redis_client: Redis connection
            requests_per_minute_ip: Max requests per IP per minute
            requests_per_minute_user: Max requests per user per minute
            window_seconds: Sliding window size in seconds
            exempt_paths: Paths never limited (health checks, gateway callbacks)
        """
        super().__init__(app)
        self.redis = redis_client
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds
        self.exempt_paths = exempt_paths

    def _check_rate_limit(
        self,
        key: str,
        limit: int,
        window: int
    ) -> Tuple[bool, int]:
        """
        Check rate limit using Redis sorted set (sliding window).

        Args:
            key: Redis key for this limit (e.g., "rate:ip:192.168.1.1")
            limit: Maximum requests allowed
            window: Time window in seconds

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            current_time = time.time()
            window_start = current_time - window

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {f"{current_time}-{uuid.uuid4().hex[:8]}": current_time})
            pipe.expire(key, window + 1)
            results = pipe.execute()

            # Count before the current request was added
            count = results[1]
            return count < limit, count + 1

        except redis.RedisError as e:
            logger.error("Redis rate limit error", extra={"error": str(e)})
            return True, 0

    def _too_many_requests(self, limit_type: str, limit: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": f"Rate limit exceeded for {limit_type}. Maximum {limit} requests per minute.",
                "code": "rate_limited"
            },
            headers={"Retry-After": str(self.window_seconds)}
        )

    @staticmethod
    def _client_ip(request: Request) -> str:
        if "x-forwarded-for" in request.headers:
            return request.headers["x-forwarded-for"].split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _user_id(request: Request) -> Optional[str]:
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.lower().startswith("bearer "):
            return API_TOKENS.get(auth_header.split(" ", 1)[1].strip())
        return None

    async def dispatch(self, request: Request, call_next):
        """
        Process request with Redis-backed dual-tier rate limiting.

        Returns:
            Response, or 429 if rate limited
        """
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = self._client_ip(request)
        user_id = self._user_id(request)

        ip_allowed, ip_count = self._check_rate_limit(
            f"rate:ip:{client_ip}",
            self.requests_per_minute_ip,
            self.window_seconds
        )
        if not ip_allowed:
            rate_limit_exceeded_counter.add(1, {"limit_type": "ip"})
            logger.warning("Rate limit exceeded for IP", extra={
                "client_ip": client_ip,
                "count": ip_count,
                "limit": self.requests_per_minute_ip
            })
            return self._too_many_requests("IP", self.requests_per_minute_ip)

        if user_id:
            user_allowed, user_count = self._check_rate_limit(
                f"rate:user:{user_id}",
                self.requests_per_minute_user,
                self.window_seconds
            )
            if not user_allowed:
                rate_limit_exceeded_counter.add(1, {"limit_type": "user"})
                logger.warning("Rate limit exceeded for user", extra={
                    "user_id": user_id,
                    "count": user_count,
                    "limit": self.requests_per_minute_user
                })
                return self._too_many_requests("user", self.requests_per_minute_user)

        response = await call_next(request)

        self._detect_suspicious_activity(response.status_code, client_ip)

        return response

    def _detect_suspicious_activity(self, status_code: int, client_ip: str) -> None:
        """
        Flag bursts of failed requests from one IP within five minutes:
        failed auths (credential stuffing), 404s (endpoint scanning) and
        4xx in general (abuse).
        """
        try:
            current_time = time.time()
            window = 300

            for matches, suffix, threshold, activity in SUSPICIOUS_PATTERNS:
                if not matches(status_code):
                    continue
                key = f"suspicious:{suffix}:{client_ip}"
                self.redis.zadd(key, {str(current_time): current_time})
                self.redis.expire(key, window + 1)

                count = self.redis.zcount(key, current_time - window, current_time)
                if count >= threshold:
                    suspicious_activity_counter.add(1, {"type": activity})
                    logger.warning("Suspicious activity detected", extra={
                        "type": activity,
                        "client_ip": client_ip,
                        "count": count
                    })

        except redis.RedisError as e:
            logger.error("Error detecting suspicious activity", extra={"error": str(e)})
