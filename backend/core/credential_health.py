"""
Credential encryption health reporting.

Turns the cipher's counters into an operator report: overall status,
alerts, recommendations, trends and the current tenant's credential state.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from core import config
from core.credential_metrics import CredentialHealthSnapshot, EncryptionMethod, calculate_rate
from core.encryption import (
    CredentialCipher,
    CredentialError,
    CurrentEncrypted,
    get_credential_cipher,
    is_encrypted,
    parse_stored_credential,
)

logger = logging.getLogger(__name__)

# Alert threshold configuration (percentages)
THRESHOLDS: Dict[str, float] = {
    "critical_success_rate": 50,
    "warning_success_rate": 80,
    "critical_security_score": 30,
    "warning_security_score": 60,
    "min_cache_efficiency": 30,
}

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthAlert(CamelModel):
    level: str  # critical / warning / info
    message: str
    metric: str
    value: Any


class HealthTrends(CamelModel):
    improving: List[str] = []
    degrading: List[str] = []
    stable: List[str] = []


class TenantEncryptionStatus(CamelModel):
    version: str
    last_migration: Optional[str] = None
    is_encrypted: bool
    requires_migration: bool


class HealthScores(CamelModel):
    overall: float
    success: float
    cache: float


class HealthReport(CamelModel):
    status: str
    timestamp: str
    metrics: Dict[str, Any]
    scores: HealthScores
    alerts: List[HealthAlert]
    recommendations: List[str]
    tenant_status: Optional[TenantEncryptionStatus] = None
    trends: HealthTrends
    thresholds: Dict[str, float]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def classify_health(metrics: CredentialHealthSnapshot) -> str:
    """Critical conditions are checked strictly before warning conditions."""
    plaintext = metrics.usage(EncryptionMethod.PLAINTEXT)
    legacy = metrics.usage(EncryptionMethod.LEGACY)
    current = metrics.usage(EncryptionMethod.PBKDF2)

    if (
        metrics.success_rate < THRESHOLDS["critical_success_rate"]
        or metrics.security_score < THRESHOLDS["critical_security_score"]
        or plaintext > 0
    ):
        return CRITICAL

    if (
        metrics.success_rate < THRESHOLDS["warning_success_rate"]
        or metrics.security_score < THRESHOLDS["warning_security_score"]
        or legacy > current
    ):
        return WARNING

    return HEALTHY


def generate_alerts(metrics: CredentialHealthSnapshot) -> List[HealthAlert]:
    alerts: List[HealthAlert] = []
    plaintext = metrics.usage(EncryptionMethod.PLAINTEXT)
    legacy = metrics.usage(EncryptionMethod.LEGACY)
    current = metrics.usage(EncryptionMethod.PBKDF2)
    success_rate = metrics.success_rate
    security_score = metrics.security_score

    # Critical
    if plaintext > 0:
        alerts.append(HealthAlert(
            level=CRITICAL,
            message="Plaintext sensitive data detected",
            metric="plaintext_usage",
            value=plaintext,
        ))

    if success_rate < THRESHOLDS["critical_success_rate"]:
        alerts.append(HealthAlert(
            level=CRITICAL,
            message=f"Success rate critically low: {success_rate:.2f}%",
            metric="success_rate",
            value=success_rate,
        ))

    if security_score < THRESHOLDS["critical_security_score"]:
        alerts.append(HealthAlert(
            level=CRITICAL,
            message=f"Security score critically low: {security_score:.2f}%",
            metric="security_score",
            value=security_score,
        ))

    # Warning
    if legacy > current:
        alerts.append(HealthAlert(
            level=WARNING,
            message="Majority of credential usage is on the legacy method",
            metric="legacy_usage",
            value={"legacy": legacy, "pbkdf2": current},
        ))

    if THRESHOLDS["critical_success_rate"] <= success_rate < THRESHOLDS["warning_success_rate"]:
        alerts.append(HealthAlert(
            level=WARNING,
            message=f"Success rate below threshold: {success_rate:.2f}%",
            metric="success_rate",
            value=success_rate,
        ))

    if metrics.cache_lookups > 0 and metrics.cache_efficiency < THRESHOLDS["min_cache_efficiency"]:
        alerts.append(HealthAlert(
            level=WARNING,
            message=f"Cache efficiency low: {metrics.cache_efficiency:.2f}%",
            metric="cache_efficiency",
            value=metrics.cache_efficiency,
        ))

    # Info
    if metrics.self_healing_reencryptions > 0:
        alerts.append(HealthAlert(
            level="info",
            message=f"{metrics.self_healing_reencryptions} items automatically re-encrypted",
            metric="self_healing",
            value=metrics.self_healing_reencryptions,
        ))

    return alerts


def generate_recommendations(metrics: CredentialHealthSnapshot) -> List[str]:
    recommendations: List[str] = []

    if not config.ENCRYPTION_KEY:
        recommendations.append("CRITICAL: Set ENCRYPTION_KEY environment variable immediately")

    if metrics.usage(EncryptionMethod.PLAINTEXT) > 0:
        recommendations.append("CRITICAL: Plaintext sensitive data detected - encrypt immediately")

    if metrics.usage(EncryptionMethod.LEGACY) > metrics.usage(EncryptionMethod.PBKDF2):
        recommendations.append("HIGH: Majority of data using legacy encryption - schedule migration")

    if metrics.security_score < 50:
        recommendations.append("MEDIUM: Low security score - increase usage of enhanced encryption")

    if metrics.fallback_decryptions > metrics.decryption_successes * 0.3:
        recommendations.append("LOW: High fallback usage - consider data migration")

    if not recommendations:
        recommendations.append("System operating optimally with good security posture")

    return recommendations


def calculate_trends(metrics: CredentialHealthSnapshot) -> HealthTrends:
    trends = HealthTrends()

    if metrics.usage(EncryptionMethod.PBKDF2) > 0:
        trends.improving.append("Enhanced encryption adoption")
    if metrics.self_healing_reencryptions > 0:
        trends.improving.append("Automatic security upgrades active")
    if metrics.cache_hits > metrics.cache_misses:
        trends.improving.append("Cache performance optimized")

    if metrics.usage(EncryptionMethod.PLAINTEXT) > 0:
        trends.degrading.append("Plaintext data exposure")
    if metrics.encryption_failures > metrics.encryption_successes * 0.1:
        trends.degrading.append("High encryption failure rate")
    if metrics.fallback_decryptions > metrics.decryption_successes * 0.5:
        trends.degrading.append("Excessive fallback usage")

    if metrics.total_operations > 0 and metrics.total_failures / metrics.total_operations < 0.05:
        trends.stable.append("Low overall failure rate")

    return trends


def tenant_status(twilio_config: dict) -> TenantEncryptionStatus:
    """Encryption state of one stored Twilio configuration"""
    auth_token = twilio_config.get("auth_token") or ""
    version = twilio_config.get("encryption_version")
    try:
        requires_migration = not isinstance(parse_stored_credential(auth_token, version), CurrentEncrypted)
    except CredentialError:
        # unreadable values surface as failed migration details
        requires_migration = True
    last_migration = twilio_config.get("last_migration")
    if isinstance(last_migration, datetime):
        last_migration = last_migration.isoformat()
    return TenantEncryptionStatus(
        version=version or "unknown",
        last_migration=last_migration,
        is_encrypted=is_encrypted(auth_token),
        requires_migration=requires_migration,
    )


def _metrics_section(metrics: CredentialHealthSnapshot) -> Dict[str, Any]:
    return {
        "encryption": {
            "attempts": metrics.encryption_attempts,
            "successes": metrics.encryption_successes,
            "failures": metrics.encryption_failures,
            "successRate": round(metrics.encryption_success_rate, 2),
        },
        "decryption": {
            "attempts": metrics.decryption_attempts,
            "successes": metrics.decryption_successes,
            "failures": metrics.decryption_failures,
            "successRate": round(calculate_rate(metrics.decryption_successes, metrics.decryption_attempts), 2),
            "fallbacks": metrics.fallback_decryptions,
        },
        "methodDistribution": dict(metrics.method_usage),
        "cache": {
            "hits": metrics.cache_hits,
            "misses": metrics.cache_misses,
            "efficiency": round(metrics.cache_efficiency, 2),
        },
        "selfHealing": {
            "reencryptions": metrics.self_healing_reencryptions,
        },
    }


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class CredentialHealthMonitor:
    """Operator-facing view over one cipher's counters"""

    def __init__(self, cipher: CredentialCipher):
        self.cipher = cipher

    def get_metrics(self) -> CredentialHealthSnapshot:
        return self.cipher.metrics.snapshot()

    def clear_key_cache(self) -> None:
        self.cipher.clear_key_cache()

    def build_report(self, twilio_config: Optional[dict] = None) -> HealthReport:
        metrics = self.get_metrics()
        return HealthReport(
            status=classify_health(metrics),
            timestamp=datetime.now(timezone.utc).isoformat(),
            metrics=_metrics_section(metrics),
            scores=HealthScores(
                overall=round(metrics.security_score, 2),
                success=round(metrics.success_rate, 2),
                cache=round(metrics.cache_efficiency, 2),
            ),
            alerts=generate_alerts(metrics),
            recommendations=generate_recommendations(metrics),
            tenant_status=tenant_status(twilio_config) if twilio_config else None,
            trends=calculate_trends(metrics),
            thresholds=dict(THRESHOLDS),
        )

    def summary(self) -> Dict[str, Any]:
        """Short form embedded in Twilio route responses"""
        metrics = self.get_metrics()
        return {
            "status": classify_health(metrics),
            "securityScore": round(metrics.security_score, 2),
            "successRate": round(metrics.success_rate, 2),
            "recommendations": generate_recommendations(metrics),
        }


def get_health_monitor(cipher: CredentialCipher = Depends(get_credential_cipher)) -> CredentialHealthMonitor:
    return CredentialHealthMonitor(cipher)
