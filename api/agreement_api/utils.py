import json
import bcrypt
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=10)).decode()

def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False

def make_token(payload: dict, salt: str = "session") -> str:
    s = URLSafeTimedSerializer(SECRET_KEY, salt=salt)
    return s.dumps(payload)

def read_token(token: str, max_age: int, salt: str = "session") -> dict:
    # raises itsdangerous.BadSignature (or SignatureExpired) on tampering/expiry
    s = URLSafeTimedSerializer(SECRET_KEY, salt=salt)
    return s.loads(token, max_age=max_age)
