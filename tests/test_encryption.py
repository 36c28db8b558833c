import pytest

from conftest import (
    ACCOUNT_SID,
    TEST_ENCRYPTION_KEY,
    legacy_encrypt,
    original_legacy_encrypt,
    salted_v2_encrypt,
)
from core import config
from core.credential_metrics import EncryptionMethod
from core.encryption import (
    CipherError,
    CredentialCipher,
    CurrentEncrypted,
    EnvReference,
    FormatError,
    IntegrityError,
    KeyDerivation,
    LegacyEncrypted,
    Pbkdf2KeyDerivation,
    Plaintext,
    SaltedCurrentEncrypted,
    Sha256KeyDerivation,
    is_encrypted,
    parse_stored_credential,
)


# ============= PARSING =============

def test_parse_classifies_each_format():
    legacy = legacy_encrypt("secret", ACCOUNT_SID)

    assert isinstance(parse_stored_credential("plain-token"), Plaintext)
    assert isinstance(parse_stored_credential(legacy), LegacyEncrypted)
    assert isinstance(parse_stored_credential("v2:" + legacy), CurrentEncrypted)


def test_parse_salted_v2_and_env_reference():
    salted = parse_stored_credential(salted_v2_encrypt("secret", ACCOUNT_SID))
    reference = parse_stored_credential("${TWILIO_AUTH_TOKEN}")

    assert isinstance(salted, SaltedCurrentEncrypted)
    assert len(salted.key_salt) == 32
    assert reference == EnvReference("TWILIO_AUTH_TOKEN")
    assert isinstance(parse_stored_credential("${not a name}"), Plaintext)


def test_bare_triple_tagged_v2_is_current():
    legacy = legacy_encrypt("secret", ACCOUNT_SID)

    assert isinstance(parse_stored_credential(legacy, "v2"), CurrentEncrypted)


@pytest.mark.parametrize("value, version", [
    ("v2:not-hex:00:00", None),
    ("v2:0011:2233", None),
    ("v2:", None),
    ("v2::00:11:22", None),
    ("v2:00:11:22:33:44", None),
    ("plain-token", "v2"),
])
def test_malformed_v2_raises_format_error(value, version):
    with pytest.raises(FormatError):
        parse_stored_credential(value, version)


def test_is_encrypted_is_structural():
    assert is_encrypted("00ff:aa:")
    assert is_encrypted("v2:00ff:aa:bb")
    assert is_encrypted("v2:11:00ff:aa:bb")
    assert not is_encrypted("not:a:validhexvalue")
    assert not is_encrypted("plain-token")
    assert not is_encrypted("")
    assert not is_encrypted(None)
    assert not is_encrypted("00ff:aa:bb\n")


def test_plaintext_repr_hides_value():
    assert "hunter2" not in repr(Plaintext("hunter2"))


# ============= ROUND TRIP =============

@pytest.mark.parametrize("secret", ["auth-token-123", "", "pässwörd ✓ 認証"])
def test_encrypt_decrypt_round_trip(cipher, secret):
    stored = cipher.encrypt(secret, ACCOUNT_SID)

    assert stored.startswith("v2:")
    assert is_encrypted(stored)
    assert cipher.decrypt(stored, ACCOUNT_SID) == secret


def test_encrypt_uses_fresh_iv(cipher):
    first = cipher.encrypt("same", ACCOUNT_SID)
    second = cipher.encrypt("same", ACCOUNT_SID)

    assert first != second
    assert first.split(":")[1] != second.split(":")[1]


def test_tampered_ciphertext_fails_integrity(cipher):
    stored = cipher.encrypt("auth-token-123", ACCOUNT_SID)
    prefix, iv, tag, ciphertext = stored.split(":")
    flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]

    with pytest.raises(IntegrityError):
        cipher.decrypt(":".join([prefix, iv, tag, flipped]), ACCOUNT_SID)


def test_salt_scopes_the_key(cipher):
    stored = cipher.encrypt("auth-token-123", ACCOUNT_SID)

    with pytest.raises(IntegrityError):
        cipher.decrypt(stored, "AC" + "2" * 32)


def test_decrypt_rejects_plaintext(cipher, metrics):
    with pytest.raises(FormatError):
        cipher.decrypt("plain-token", ACCOUNT_SID)

    snapshot = metrics.snapshot()
    assert snapshot.decryption_attempts == 1
    assert snapshot.decryption_failures == 1


def test_keys_are_deterministic_across_instances():
    def build():
        return CredentialCipher(
            key_derivation=Pbkdf2KeyDerivation(lambda: TEST_ENCRYPTION_KEY, iterations=1000),
        )

    stored = build().encrypt("auth-token-123", ACCOUNT_SID)

    assert build().decrypt(stored, ACCOUNT_SID) == "auth-token-123"


def test_rotated_secret_cannot_read_old_values():
    secret = {"value": "first-secret-value"}
    cipher = CredentialCipher(key_derivation=Pbkdf2KeyDerivation(lambda: secret["value"], iterations=1000))
    stored = cipher.encrypt("auth-token-123", ACCOUNT_SID)

    secret["value"] = "second-secret-value"

    with pytest.raises(IntegrityError):
        cipher.decrypt(stored, ACCOUNT_SID)


def test_injected_derivations_are_kept(metrics):
    derivation = Pbkdf2KeyDerivation(lambda: TEST_ENCRYPTION_KEY, iterations=1000)
    legacy = Sha256KeyDerivation(lambda: "another-legacy-key")

    cipher = CredentialCipher(metrics=metrics, key_derivation=derivation, legacy_key_derivation=legacy)

    assert cipher.key_derivation is derivation
    assert cipher.legacy_key_derivation is legacy
    assert derivation.metrics is metrics


def test_injected_secret_is_used_for_keys():
    first = CredentialCipher(key_derivation=Pbkdf2KeyDerivation(lambda: "first-secret-value", iterations=1000))
    second = CredentialCipher(key_derivation=Pbkdf2KeyDerivation(lambda: "second-secret-value", iterations=1000))
    stored = first.encrypt("auth-token-123", ACCOUNT_SID)

    with pytest.raises(IntegrityError):
        second.decrypt(stored, ACCOUNT_SID)


def test_key_derivation_is_abstract():
    with pytest.raises(TypeError):
        KeyDerivation(lambda: TEST_ENCRYPTION_KEY)


# ============= LEGACY =============

def test_legacy_decrypt_counts_fallback(cipher, metrics):
    stored = legacy_encrypt("old-token", ACCOUNT_SID)

    assert cipher.decrypt(stored, ACCOUNT_SID) == "old-token"

    snapshot = metrics.snapshot()
    assert snapshot.fallback_decryptions == 1
    assert snapshot.usage(EncryptionMethod.LEGACY) == 1
    assert snapshot.decryption_successes == 1


def test_default_legacy_key_reads_values_from_before_v2(monkeypatch):
    monkeypatch.setattr(config, "LEGACY_ENCRYPTION_KEY", config.DEFAULT_APP_KEY)
    cipher = CredentialCipher(key_derivation=Pbkdf2KeyDerivation(lambda: TEST_ENCRYPTION_KEY, iterations=1000))

    stored = original_legacy_encrypt("old-token", ACCOUNT_SID)

    assert cipher.decrypt(stored, ACCOUNT_SID) == "old-token"


def test_resolve_reports_method(cipher):
    legacy = cipher.resolve(legacy_encrypt("old-token", ACCOUNT_SID), ACCOUNT_SID)
    plain = cipher.resolve("plain-token", ACCOUNT_SID)
    current = cipher.resolve(cipher.encrypt("new-token", ACCOUNT_SID), ACCOUNT_SID)

    assert (legacy.secret, legacy.method, legacy.requires_reencryption) == ("old-token", EncryptionMethod.LEGACY, True)
    assert (plain.secret, plain.method, plain.requires_reencryption) == ("plain-token", EncryptionMethod.PLAINTEXT, True)
    assert (current.secret, current.method, current.requires_reencryption) == ("new-token", EncryptionMethod.PBKDF2, False)


def test_classify_does_not_touch_counters(cipher, metrics):
    assert cipher.classify("plain-token") == EncryptionMethod.PLAINTEXT
    assert cipher.classify(legacy_encrypt("x", ACCOUNT_SID)) == EncryptionMethod.LEGACY
    assert metrics.snapshot().decryption_attempts == 0


# ============= SALTED V2 =============

def test_salted_v2_resolves_and_requires_reencryption(cipher, metrics):
    resolved = cipher.resolve(salted_v2_encrypt("salted-token", ACCOUNT_SID), ACCOUNT_SID)

    assert resolved.secret == "salted-token"
    assert resolved.method == EncryptionMethod.PBKDF2
    assert resolved.requires_reencryption
    assert metrics.snapshot().fallback_decryptions == 0


def test_salted_v2_default_iteration_count():
    cipher = CredentialCipher(key_derivation=Pbkdf2KeyDerivation(lambda: TEST_ENCRYPTION_KEY, iterations=1000))
    stored = salted_v2_encrypt("salted-token", ACCOUNT_SID, iterations=100_000)

    assert cipher.decrypt(stored, ACCOUNT_SID) == "salted-token"


def test_salted_v2_reencrypts_to_current_format(cipher, metrics):
    result = cipher.reencrypt_with_enhanced_security(salted_v2_encrypt("salted-token", ACCOUNT_SID), ACCOUNT_SID)

    assert isinstance(parse_stored_credential(result.new_encrypted), CurrentEncrypted)
    assert cipher.decrypt(result.new_encrypted, ACCOUNT_SID) == "salted-token"
    assert metrics.snapshot().self_healing_reencryptions == 1


def test_salted_v2_needs_pbkdf2_derivation():
    cipher = CredentialCipher(key_derivation=Sha256KeyDerivation(lambda: TEST_ENCRYPTION_KEY))

    with pytest.raises(CipherError):
        cipher.decrypt(salted_v2_encrypt("salted-token", ACCOUNT_SID), ACCOUNT_SID)


# ============= ENVIRONMENT REFERENCES =============

def test_env_reference_resolves_from_environment(cipher, metrics, monkeypatch):
    monkeypatch.setenv("FIELDHAND_TWILIO_TOKEN", "env-token")

    resolved = cipher.resolve("${FIELDHAND_TWILIO_TOKEN}", ACCOUNT_SID)

    assert resolved.secret == "env-token"
    assert resolved.method == EncryptionMethod.ENV_VAR
    assert resolved.requires_reencryption
    snapshot = metrics.snapshot()
    assert snapshot.usage(EncryptionMethod.ENV_VAR) == 1
    assert snapshot.fallback_decryptions == 1


def test_env_reference_to_unset_variable_fails(cipher, metrics, monkeypatch):
    monkeypatch.delenv("FIELDHAND_TWILIO_TOKEN", raising=False)

    with pytest.raises(FormatError):
        cipher.resolve("${FIELDHAND_TWILIO_TOKEN}", ACCOUNT_SID)

    assert metrics.snapshot().decryption_failures == 1


def test_decrypt_rejects_env_reference(cipher, monkeypatch):
    monkeypatch.setenv("FIELDHAND_TWILIO_TOKEN", "env-token")

    with pytest.raises(FormatError):
        cipher.decrypt("${FIELDHAND_TWILIO_TOKEN}", ACCOUNT_SID)


# ============= RE-ENCRYPTION =============

def test_reencrypt_legacy(cipher, metrics):
    result = cipher.reencrypt_with_enhanced_security(legacy_encrypt("old-token", ACCOUNT_SID), ACCOUNT_SID)

    assert result.was_legacy
    assert result.from_method == EncryptionMethod.LEGACY
    assert result.new_encrypted.startswith("v2:")
    assert cipher.decrypt(result.new_encrypted, ACCOUNT_SID) == "old-token"
    assert metrics.snapshot().self_healing_reencryptions == 1


def test_reencrypt_plaintext(cipher, metrics):
    result = cipher.reencrypt_with_enhanced_security("plain-token", ACCOUNT_SID)

    assert not result.was_legacy
    assert result.from_method == EncryptionMethod.PLAINTEXT
    assert cipher.decrypt(result.new_encrypted, ACCOUNT_SID) == "plain-token"
    assert metrics.snapshot().self_healing_reencryptions == 1


def test_reencrypt_current_value_refreshes_without_counting(cipher, metrics):
    stored = cipher.encrypt("new-token", ACCOUNT_SID)

    result = cipher.reencrypt_with_enhanced_security(stored, ACCOUNT_SID)

    assert result.new_encrypted != stored
    assert result.from_method == EncryptionMethod.PBKDF2
    assert metrics.snapshot().self_healing_reencryptions == 0


def test_reencrypt_corrupt_value_propagates(cipher, metrics):
    corrupt = "v2:" + "00" * 16 + ":" + "00" * 16 + ":abcd"

    with pytest.raises(IntegrityError):
        cipher.reencrypt_with_enhanced_security(corrupt, ACCOUNT_SID)

    snapshot = metrics.snapshot()
    assert snapshot.encryption_attempts == 0
    assert snapshot.self_healing_reencryptions == 0


# ============= FAILURES AND CACHE =============

def test_derivation_failure_is_cipher_error(metrics):
    def broken_secret():
        raise ValueError("secret store unreachable")

    cipher = CredentialCipher(metrics=metrics, key_derivation=Pbkdf2KeyDerivation(broken_secret, iterations=1000))

    with pytest.raises(CipherError, match="Failed to encrypt data"):
        cipher.encrypt("auth-token-123", ACCOUNT_SID)

    snapshot = metrics.snapshot()
    assert snapshot.encryption_failures == 1
    assert snapshot.encryption_success_rate == 0


def test_key_cache_hits_and_clear(cipher, metrics):
    cipher.encrypt("a", ACCOUNT_SID)
    cipher.encrypt("b", ACCOUNT_SID)

    snapshot = metrics.snapshot()
    assert snapshot.cache_misses == 1
    assert snapshot.cache_hits == 1
    assert cipher.key_derivation.cache_size == 1

    cipher.clear_key_cache()
    assert cipher.key_derivation.cache_size == 0

    cipher.encrypt("c", ACCOUNT_SID)
    assert metrics.snapshot().cache_misses == 2


def test_expired_cache_entry_is_rederived(metrics):
    derivation = Pbkdf2KeyDerivation(lambda: TEST_ENCRYPTION_KEY, iterations=1000, cache_ttl=0)
    cipher = CredentialCipher(metrics=metrics, key_derivation=derivation)

    cipher.encrypt("a", ACCOUNT_SID)
    cipher.encrypt("b", ACCOUNT_SID)

    assert metrics.snapshot().cache_misses == 2
    assert metrics.snapshot().cache_hits == 0
