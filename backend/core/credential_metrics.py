"""
Process-lifetime counters for credential encryption.

One CredentialHealthMetrics instance is owned by each CredentialCipher and
read back by the health monitor. Counters only ever go up until reset().
"""
import threading
from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field


class EncryptionMethod(str, Enum):
    PBKDF2 = "pbkdf2"
    LEGACY = "legacy"
    PLAINTEXT = "plaintext"
    ENV_VAR = "env_var"


# Contribution of each method to the security score (0.0 - 1.0)
SECURITY_WEIGHTS: Dict[EncryptionMethod, float] = {
    EncryptionMethod.PBKDF2: 1.0,
    EncryptionMethod.ENV_VAR: 0.5,
    EncryptionMethod.LEGACY: 0.25,
    EncryptionMethod.PLAINTEXT: 0.0,
}


def calculate_rate(successes: int, attempts: int) -> float:
    """Success percentage; 100 when nothing has been attempted"""
    return (successes / attempts) * 100 if attempts > 0 else 100.0


def calculate_security_score(method_usage: Dict[str, int]) -> float:
    """
    Weighted share of secure credential usage, bounded 0-100.

    Every recorded use contributes its method weight; plaintext contributes
    nothing and legacy a quarter. With no recorded usage the score is 100.
    """
    total = sum(method_usage.values())
    if total == 0:
        return 100.0
    weighted = sum(
        SECURITY_WEIGHTS.get(EncryptionMethod(method), 0.0) * count
        for method, count in method_usage.items()
    )
    return max(0.0, min(100.0, (weighted / total) * 100))


def _empty_method_usage() -> Dict[str, int]:
    return {method.value: 0 for method in EncryptionMethod}


class CredentialHealthSnapshot(BaseModel):
    """Point-in-time copy of the counters plus derived percentages"""
    encryption_attempts: int = 0
    encryption_successes: int = 0
    encryption_failures: int = 0
    decryption_attempts: int = 0
    decryption_successes: int = 0
    decryption_failures: int = 0
    fallback_decryptions: int = 0
    self_healing_reencryptions: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    method_usage: Dict[str, int] = Field(default_factory=_empty_method_usage)

    success_rate: float = 100.0
    encryption_success_rate: float = 100.0
    decryption_success_rate: float = 100.0
    security_score: float = 100.0
    cache_efficiency: float = 0.0

    def usage(self, method: EncryptionMethod) -> int:
        return self.method_usage.get(method.value, 0)

    @property
    def total_operations(self) -> int:
        return self.encryption_attempts + self.decryption_attempts

    @property
    def total_failures(self) -> int:
        return self.encryption_failures + self.decryption_failures

    @property
    def cache_lookups(self) -> int:
        return self.cache_hits + self.cache_misses


class CredentialHealthMetrics:
    """Lock-guarded counters fed by every cipher operation"""

    def __init__(self):
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self.encryption_attempts = 0
        self.encryption_successes = 0
        self.encryption_failures = 0
        self.decryption_attempts = 0
        self.decryption_successes = 0
        self.decryption_failures = 0
        self.fallback_decryptions = 0
        self.self_healing_reencryptions = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.method_usage = _empty_method_usage()

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def record_method(self, method: EncryptionMethod) -> None:
        with self._lock:
            self.method_usage[method.value] += 1

    def snapshot(self) -> CredentialHealthSnapshot:
        with self._lock:
            counters = {
                "encryption_attempts": self.encryption_attempts,
                "encryption_successes": self.encryption_successes,
                "encryption_failures": self.encryption_failures,
                "decryption_attempts": self.decryption_attempts,
                "decryption_successes": self.decryption_successes,
                "decryption_failures": self.decryption_failures,
                "fallback_decryptions": self.fallback_decryptions,
                "self_healing_reencryptions": self.self_healing_reencryptions,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "method_usage": dict(self.method_usage),
            }

        attempts = counters["encryption_attempts"] + counters["decryption_attempts"]
        successes = counters["encryption_successes"] + counters["decryption_successes"]
        lookups = counters["cache_hits"] + counters["cache_misses"]

        return CredentialHealthSnapshot(
            **counters,
            success_rate=calculate_rate(successes, attempts),
            encryption_success_rate=calculate_rate(
                counters["encryption_successes"], counters["encryption_attempts"]
            ),
            decryption_success_rate=calculate_rate(
                counters["decryption_successes"], counters["decryption_attempts"]
            ),
            security_score=calculate_security_score(counters["method_usage"]),
            cache_efficiency=(counters["cache_hits"] / lookups) * 100 if lookups else 0.0,
        )
