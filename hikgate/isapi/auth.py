"""ISAPI Digest Authentication (RFC 2617, qop=auth).

Devices answer unauthenticated requests with::

    WWW-Authenticate: Digest realm="...", qop="auth", nonce="...", opaque="..."

and the client replays the request once with an ``Authorization`` header
built from that challenge.
"""

import hashlib
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from ..errors import ChallengeError

# Only one authenticated attempt is ever made per challenge, so the nonce
# count never advances. Reusing a nonce across requests would need a
# per-nonce counter.
NONCE_COUNT = "00000001"

_PARAM_PATTERN = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^\s,]+))')
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


@dataclass
class DigestChallenge:
    """Parsed WWW-Authenticate challenge."""
    realm: str
    nonce: str
    qop: Optional[str] = None
    opaque: Optional[str] = None
    algorithm: str = "MD5"


def parse_www_authenticate(header: Optional[str]) -> DigestChallenge:
    """Parse a WWW-Authenticate header value into a DigestChallenge."""
    if not header:
        raise ChallengeError("401 response without WWW-Authenticate header")

    header = header.strip()
    if not header.lower().startswith("digest "):
        scheme = header.split(None, 1)[0]
        raise ChallengeError(f"Unsupported authentication scheme: {scheme}")

    params = {}
    for match in _PARAM_PATTERN.finditer(header[7:]):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        if _CONTROL_CHARS.search(value):
            raise ChallengeError(f"Control character in digest parameter: {match.group(1)}")
        params[match.group(1).lower()] = value

    if not params.get("realm") or not params.get("nonce"):
        raise ChallengeError("Digest challenge missing realm or nonce")

    algorithm = params.get("algorithm", "MD5")
    if algorithm.upper() != "MD5":
        raise ChallengeError(f"Unsupported digest algorithm: {algorithm}")

    qop = params.get("qop")
    if qop is not None:
        options = [q.strip() for q in qop.split(",")]
        if "auth" not in options:
            raise ChallengeError(f"Unsupported qop: {qop}")
        qop = "auth"

    return DigestChallenge(
        realm=params["realm"],
        nonce=params["nonce"],
        qop=qop,
        opaque=params.get("opaque"),
        algorithm=algorithm,
    )


def generate_cnonce() -> str:
    """8 random bytes from the CSPRNG, hex encoded."""
    return secrets.token_hex(8)


def compute_digest_response(
    username: str,
    password: str,
    realm: str,
    nonce: str,
    method: str,
    uri: str,
    qop: Optional[str] = None,
    nc: Optional[str] = None,
    cnonce: Optional[str] = None,
) -> str:
    """Compute digest authentication response hash."""
    def md5_hash(data: str) -> str:
        return hashlib.md5(data.encode('utf-8')).hexdigest()

    # HA1 = MD5(username:realm:password)
    ha1 = md5_hash(f"{username}:{realm}:{password}")

    # HA2 = MD5(method:uri)
    ha2 = md5_hash(f"{method}:{uri}")

    if qop:
        # Response = MD5(HA1:nonce:nc:cnonce:qop:HA2)
        return md5_hash(f"{ha1}:{nonce}:{nc}:{cnonce}:{qop}:{ha2}")

    # RFC 2069: Response = MD5(HA1:nonce:HA2)
    return md5_hash(f"{ha1}:{nonce}:{ha2}")


def build_authorization_header(
    username: str,
    password: str,
    challenge: DigestChallenge,
    method: str,
    uri: str,
    cnonce: Optional[str] = None,
) -> str:
    """Build Authorization header value for digest auth."""
    method = method.upper()
    if challenge.qop:
        cnonce = cnonce or generate_cnonce()
        nc = NONCE_COUNT
    else:
        cnonce = nc = None

    response = compute_digest_response(
        username=username,
        password=password,
        realm=challenge.realm,
        nonce=challenge.nonce,
        method=method,
        uri=uri,
        qop=challenge.qop,
        nc=nc,
        cnonce=cnonce,
    )

    parts = [
        f'Digest username="{username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
    ]

    if challenge.qop:
        parts += [
            f'qop={challenge.qop}',
            f'nc={nc}',
            f'cnonce="{cnonce}"',
        ]

    parts.append(f'response="{response}"')

    if challenge.opaque:
        parts.append(f'opaque="{challenge.opaque}"')

    return ", ".join(parts)
