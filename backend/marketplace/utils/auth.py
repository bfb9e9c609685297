from passlib.context import CryptContext
import os

# Configure bcrypt rounds explicitly for predictable performance.
# Defaults to 11 rounds unless overridden via BCRYPT_ROUNDS env var.
_BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "11") or 11)
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=_BCRYPT_ROUNDS,
)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def normalize_email(email: str) -> str:
    """Return a lower-cased, trimmed email address for comparison and storage."""
    return email.strip().lower()
