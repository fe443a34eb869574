# encryption.py
import json
import base64
from os import urandom
from typing import Any, Dict, Optional
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from config import derive_encryption_key
from errors import CacheError

_AES_KEY: Optional[bytes] = None


def get_key() -> bytes:
    """Return the AES key, deriving it on first call (blocking PBKDF2)."""
    global _AES_KEY
    if _AES_KEY is None:
        _AES_KEY = derive_encryption_key()
    return _AES_KEY


def encrypt_payload(payload: Dict[str, Any]) -> str:
    """Encrypt a JSON-serializable payload with AES-GCM."""
    iv = urandom(12)
    cipher = Cipher(algorithms.AES(get_key()), modes.GCM(iv))
    encryptor = cipher.encryptor()
    data = json.dumps(payload).encode()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return base64.b64encode(iv + encryptor.tag + ciphertext).decode()


def decrypt_payload(encrypted_data: str) -> Dict[str, Any]:
    """Decrypt a payload produced by encrypt_payload."""
    try:
        raw_data = base64.b64decode(encrypted_data)
        iv, tag, ciphertext = raw_data[:12], raw_data[12:28], raw_data[28:]
        cipher = Cipher(algorithms.AES(get_key()), modes.GCM(iv, tag))
        decryptor = cipher.decryptor()
        decrypted_json = decryptor.update(ciphertext) + decryptor.finalize()
        return json.loads(decrypted_json.decode())
    except Exception as e:
        raise CacheError(f"Decryption failed: {e}")
