import random
from typing import List, Optional


def split_tokens(authorization: Optional[str]) -> List[str]:
    """Split ``Bearer T1,T2,...`` into its individual tokens."""
    if not authorization:
        return []
    v = authorization.strip()
    if v.lower().startswith("bearer "):
        v = v[7:]
    return [t.strip() for t in v.split(",") if t.strip()]


def pick_token(authorization: Optional[str]) -> Optional[str]:
    # Uniform choice per call; no affinity between a client and one credential.
    tokens = split_tokens(authorization)
    if not tokens:
        return None
    return random.choice(tokens)
