"""
Request-defense pipeline

Runs the per-request chain in order:

    block gate (overuse, then threat) -> rate limiter
        -> blocking detector -> logging-only detector

and returns a ``DefenseOutcome`` the HTTP layer turns into either a
rejection or annotations on the request. All stateful collaborators are
built here, once, from a ``DefenseConfig``.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from background import BackgroundTasks
from ip_block_store import OveruseBlockStore, ThreatBlockStore
from kv_store import STORE_ERRORS
from notification_throttle import (
    RATE_LIMIT_NOTIFICATION_PREFIX,
    SECURITY_NOTIFICATION_PREFIX,
    NotificationThrottle,
)
from rate_limiter import RateLimiter
from security_config import DefenseConfig
from security_mail import AlertMailer
from threat_detector import DetectorMode, Severity, ThreatAnalysis, ThreatDetector

logger = logging.getLogger("security")
rate_logger = logging.getLogger("rate_limit")

THREAT_BLOCKED_MESSAGE = ("Accès refusé. Votre IP a été temporairement bloquée "
                          "pour activité suspecte.")
OVERUSE_BLOCKED_MESSAGE = ("Votre adresse IP a été bloquée pendant 1 heure en raison "
                           "d'un nombre excessif de requêtes.")
RATE_LIMITED_MESSAGE = ("Trop de requêtes créées à partir de cette adresse IP. "
                        "Vous êtes bloqué pendant 1 heure.")


@dataclass
class RequestContext:
    """What the pipeline needs to know about one inbound request"""
    ip: str
    endpoint: str
    method: str = "GET"
    user_agent: str = ""
    principal_id: Optional[str] = None
    body: Any = None
    query: Any = None
    params: Any = None


@dataclass
class DefenseOutcome:
    allowed: bool
    status_code: int = 200
    message: str = ""
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    security_info: Optional[Dict[str, Any]] = None
    security_analysis: Optional[Dict[str, Any]] = None

    @classmethod
    def reject(cls, status_code: int, message: str, reason: str,
               headers: Optional[Dict[str, str]] = None) -> 'DefenseOutcome':
        return cls(allowed=False, status_code=status_code, message=message,
                   reason=reason, headers=headers or {})

    def response_body(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "hasSession": False}


class DefensePipeline:
    """
    Request-defense chain

    Usage:
        pipeline = DefensePipeline(config, store)
        outcome = await pipeline.evaluate(RequestContext(ip=..., endpoint=...))
        if not outcome.allowed:
            ...
        await pipeline.drain()  # at shutdown
    """

    def __init__(self, config: DefenseConfig, redis, mailer: Optional[AlertMailer] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.redis = redis
        self.clock = clock
        self.mailer = mailer if mailer is not None else AlertMailer(config)
        self.tasks = BackgroundTasks("security")
        self.min_block_severity = Severity(config.THREAT_BLOCK_MIN_SEVERITY)

        # one pattern table, two views of it
        self.detector = ThreatDetector(DetectorMode.BLOCK)
        self.analyzer = ThreatDetector(DetectorMode.LOG_ONLY)

        self.threat_blocks = ThreatBlockStore(
            redis, base_window=config.THREAT_BLOCK_SECONDS,
            escalation_cap=config.BLOCK_ESCALATION_CAP, clock=clock)
        self.overuse_blocks = OveruseBlockStore(
            redis, base_window=config.OVERUSE_BLOCK_SECONDS,
            escalation_cap=config.BLOCK_ESCALATION_CAP, clock=clock)
        self.security_throttle = NotificationThrottle(
            redis, SECURITY_NOTIFICATION_PREFIX, cooldown=config.NOTIFICATION_COOLDOWN, clock=clock)
        self.rate_throttle = NotificationThrottle(
            redis, RATE_LIMIT_NOTIFICATION_PREFIX, cooldown=config.NOTIFICATION_COOLDOWN, clock=clock)
        self.rate_limiter = RateLimiter(
            redis, self.overuse_blocks,
            throttle=self.rate_throttle,
            mailer=self.mailer,
            window=config.RATE_LIMIT_WINDOW,
            max_requests=config.RATE_LIMIT_MAX_REQUESTS,
            clock=clock,
            tasks=self.tasks,
        )

    # ============================================================
    # Stages
    # ============================================================

    async def check_blocked(self, ctx: RequestContext) -> Optional[DefenseOutcome]:
        overuse = await self.overuse_blocks.is_blocked(ctx.ip)
        if overuse.blocked:
            rate_logger.warning(f"Blocked IP attempted request: {ctx.ip} endpoint={ctx.endpoint} "
                                f"attempts={overuse.attempts} ua={ctx.user_agent!r}")
            return DefenseOutcome.reject(429, OVERUSE_BLOCKED_MESSAGE, "overuse_block")

        threat = await self.threat_blocks.is_blocked(ctx.ip)
        if threat.blocked:
            logger.warning(f"Blocked IP attempted request: {ctx.ip} endpoint={ctx.endpoint} "
                           f"threat_type={threat.threat_type} attempts={threat.attempts} "
                           f"ua={ctx.user_agent!r}")
            return DefenseOutcome.reject(403, THREAT_BLOCKED_MESSAGE, "threat_block")
        return None

    async def check_rate(self, ctx: RequestContext):
        result = await self.rate_limiter.check(ctx.ip, ctx.principal_id,
                                               endpoint=ctx.endpoint, user_agent=ctx.user_agent)
        headers = result.headers(self.clock())
        if not result.allowed:
            return DefenseOutcome.reject(429, RATE_LIMITED_MESSAGE, "rate_limit", headers), headers
        return None, headers

    def inspect(self, ctx: RequestContext):
        """Blocking detector; returns ``(rejection or None, security_info)``."""
        try:
            analysis = self.detector.inspect(ctx.body, ctx.query, ctx.params)
        except Exception as e:
            logger.error(f"Threat detection failed for {ctx.ip} on {ctx.endpoint}, passing request: {e!r}")
            return None, {"validated": False, "ip_address": ctx.ip, "threats": []}

        if not analysis.has_threats:
            return None, {"validated": True, "ip_address": ctx.ip, "threats": []}

        logger.warning(
            f"Security threat detected from {ctx.ip} on {ctx.endpoint}: "
            f"severity={analysis.severity.value} types={','.join(analysis.threat_types)} "
            f"count={analysis.threat_count} ua={ctx.user_agent!r}"
        )
        if analysis.severity.rank >= self.min_block_severity.rank:
            self.tasks.spawn(self._block_threat(ctx, analysis))
        return DefenseOutcome.reject(403, THREAT_BLOCKED_MESSAGE, "threat"), None

    def analyze(self, ctx: RequestContext) -> Dict[str, Any]:
        """Logging-only detector; never rejects."""
        try:
            analysis = self.analyzer.inspect(ctx.body, ctx.query, ctx.params)
        except Exception as e:
            logger.error(f"Security analysis failed for {ctx.ip} on {ctx.endpoint}: {e!r}")
            return {"validated": False, "ip_address": ctx.ip}

        if analysis.has_threats:
            detail = {
                "timestamp": datetime.now().isoformat(),
                "ip": ctx.ip,
                "endpoint": ctx.endpoint,
                "method": ctx.method,
                "user_agent": ctx.user_agent,
                "request_data": {"body": ctx.body, "query": ctx.query, "params": ctx.params},
                **analysis.to_dict(),
            }
            logger.warning(f"[SECURITY_ANALYSIS] Potential threat detected "
                           f"{json.dumps(detail, ensure_ascii=False, default=str)}")
            logger.info(f"[SECURITY_SUMMARY] {', '.join(analysis.threat_types)} detected "
                        f"from {ctx.ip} on {ctx.endpoint}")

        return {
            "validated": True,
            "ip_address": ctx.ip,
            "has_threats": analysis.has_threats,
            "severity": analysis.severity.value,
            "threat_types": analysis.threat_types,
            "threat_count": analysis.threat_count,
        }

    async def evaluate(self, ctx: RequestContext) -> DefenseOutcome:
        rejection = await self.check_blocked(ctx)
        if rejection is not None:
            return rejection

        rejection, headers = await self.check_rate(ctx)
        if rejection is not None:
            return rejection

        rejection, security_info = self.inspect(ctx)
        # the logging detector records every request, rejected ones included
        security_analysis = self.analyze(ctx)
        if rejection is not None:
            rejection.headers = headers
            rejection.security_analysis = security_analysis
            return rejection

        return DefenseOutcome(
            allowed=True,
            headers=headers,
            security_info=security_info,
            security_analysis=security_analysis,
        )

    # ============================================================
    # Background leg
    # ============================================================

    async def _block_threat(self, ctx: RequestContext, analysis: ThreatAnalysis):
        try:
            record = await self.threat_blocks.block(
                ctx.ip, ", ".join(analysis.threat_types), analysis.severity.value)
        except STORE_ERRORS as e:
            logger.error(f"Failed to block IP {ctx.ip}: {e}")
            return

        if not await self.security_throttle.should_notify(ctx.ip) or record.notified:
            return
        block_hours = self.threat_blocks.block_duration(record.attempts) / 3600
        await self.mailer.send_threat_alert(analysis, ctx.ip, ctx.endpoint, ctx.user_agent, block_hours)
        await self.threat_blocks.mark_notified(ctx.ip)

    async def drain(self):
        await self.tasks.drain()
