"""
Admin Alert System for billing operations

Operational problems that need a human (provisioning failures, settlement
amount mismatches, webhook signature failures) are raised here.

Features:
- Severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert spam
- Suppression of duplicate alerts by fingerprint
- Persistence to the admin_alerts table
- Optional delivery to a chat/incident webhook (ADMIN_ALERT_WEBHOOK_URL)
"""

import os
import logging
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Mapping, Union
from enum import Enum
from dataclasses import dataclass, asdict

import httpx

from services.repositories import ActivityRepository

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CONFIGURATION
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]

class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    PAYMENT_PROCESSING = "payment_processing"
    PROVISIONING = "provisioning"
    PRICING = "pricing"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    WEBHOOK = "webhook"
    SECURITY = "security"

@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a unique fingerprint for alert deduplication"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary for storage"""
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data

class AdminAlertConfig:
    """Configuration for admin alert system"""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        env = os.environ if env is None else env
        self.rate_limit_window = int(env.get('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(env.get('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(env.get('ALERT_SUPPRESSION_WINDOW', '3600'))
        self.min_severity = AlertSeverity(env.get('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = env.get('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        self.webhook_url = env.get('ADMIN_ALERT_WEBHOOK_URL', '')

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"webhook={'yes' if self.webhook_url else 'no'}, min_severity={self.min_severity.value}")

# ====================================================================
# ADMIN ALERT SYSTEM - MAIN CLASS
# ====================================================================

class AdminAlertSystem:
    """Admin alert system with rate limiting and deduplication"""

    def __init__(self, store: ActivityRepository, config: Optional[AdminAlertConfig] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.config = config or AdminAlertConfig()
        self._http_client = http_client
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []

    def _is_rate_limited(self, now: datetime) -> bool:
        cutoff = now - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str, now: datetime) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if now > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _format_alert_message(self, alert: Alert) -> str:
        severity_icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵",
        }
        lines = [
            f"{severity_icons.get(alert.severity, '⚠️')} ADMIN ALERT - {alert.severity.value}",
            f"Category: {alert.category.value.replace('_', ' ').title()}",
            f"Component: {alert.component}",
            f"Message: {alert.message}",
        ]
        for key, value in (alert.details or {}).items():
            lines.append(f"  • {key}: {value}")
        return "\n".join(lines)

    async def _deliver(self, alert: Alert) -> bool:
        if not self.config.webhook_url:
            return False
        client = self._http_client
        try:
            if client is None:
                async with httpx.AsyncClient(timeout=httpx.Timeout(5.0)) as temp_client:
                    response = await temp_client.post(self.config.webhook_url,
                                                      json={'text': self._format_alert_message(alert)})
            else:
                response = await client.post(self.config.webhook_url,
                                             json={'text': self._format_alert_message(alert)})
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"❌ Failed to deliver admin alert: {type(e).__name__}")
            return False

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication

        Args:
            severity: Alert severity level
            category: Alert category
            component: Component that generated the alert
            message: Human-readable alert message
            details: Additional structured data

        Returns:
            bool: True if the alert was recorded (not suppressed or rate limited)
        """
        if not self.config.alerts_enabled:
            logger.debug(f"Admin alerts disabled - skipping: {component}: {message}")
            return False

        if isinstance(severity, str):
            severity = AlertSeverity(severity.upper())
        if isinstance(category, str):
            category = AlertCategory(category.lower())

        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            logger.debug(f"Alert below minimum severity ({self.config.min_severity.value}) - skipping: {message}")
            return False

        alert = Alert(severity=severity, category=category, component=component, message=message, details=details)
        now = alert.timestamp

        if self._is_suppressed(alert.fingerprint, now):
            logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
            return False

        if self._is_rate_limited(now):
            logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
            return False

        self._rate_limit_tracker.append(now)
        self._suppressed_alerts[alert.fingerprint] = now + timedelta(seconds=self.config.suppression_window)

        log_level = getattr(logging, severity.value, logging.WARNING)
        logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

        await self.store.store_alert(alert.to_dict())
        await self._deliver(alert)
        return True

    async def send_critical_alert(self, component: str, message: str, category: AlertCategory,
                                  details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.CRITICAL, category, component, message, details)

    async def send_error_alert(self, component: str, message: str, category: AlertCategory,
                               details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.ERROR, category, component, message, details)

    async def send_warning_alert(self, component: str, message: str, category: AlertCategory,
                                 details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.WARNING, category, component, message, details)
