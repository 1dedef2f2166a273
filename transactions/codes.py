"""Transaction reference codes.

Codes are what buyers type into bank transfer notes, so the alphabet leaves
out characters that are easy to confuse (0/O, 1/I/L).
"""
import secrets

CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
DEFAULT_CODE_LENGTH = 8

def generate_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))
