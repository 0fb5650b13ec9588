"""Authentication negotiation — challenge parsing, Basic / Digest / WS-Security.

A device is approached with an ordered list of scheme strategies
(None -> Basic -> Digest -> WS-Security). Each strategy builds its
credentials for a transport (ONVIF over HTTP, or RTSP) and the first one
the device accepts wins. The winning scheme is kept in an ``AuthSession``
so later requests to the same device reuse it.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from cctvcore.device import AuthMethod, Credential

logger = logging.getLogger("cctvdiscovery.auth")

# Realm reported when a server sends a bare "Basic" challenge
FALLBACK_REALM = "Camera"
DIGEST_NONCE_COUNT = "00000001"

WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
PASSWORD_DIGEST_TYPE = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordDigest"
)
BASE64_ENCODING_TYPE = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)


# ═══════════════════════════════════════════════════════════════
# Challenge parsing
# ═══════════════════════════════════════════════════════════════

class ChallengeType(str, Enum):
    BASIC = "basic"
    DIGEST = "digest"


@dataclass
class AuthChallenge:
    type: ChallengeType
    realm: str | None = None
    nonce: str | None = None
    opaque: str | None = None
    qop: str | None = None
    algorithm: str | None = None
    stale: str | None = None

    @property
    def is_valid(self) -> bool:
        return is_valid_challenge(self)

    @property
    def is_stale(self) -> bool:
        return (self.stale or "").lower() == "true"

    def __str__(self) -> str:
        if self.type == ChallengeType.BASIC:
            return f"AuthChallenge(type=BASIC, realm={self.realm!r})"
        return (f"AuthChallenge(type=DIGEST, realm={self.realm!r}, "
                f"nonce={self.nonce!r}, qop={self.qop!r})")


_DIGEST_FIELDS = ("realm", "nonce", "opaque", "qop", "algorithm", "stale")


def is_valid_challenge(challenge: AuthChallenge | None) -> bool:
    """Basic is always usable; Digest needs both realm and nonce."""
    if challenge is None:
        return False
    if challenge.type == ChallengeType.BASIC:
        return True
    if challenge.type == ChallengeType.DIGEST:
        return bool(challenge.realm) and bool(challenge.nonce)
    return False


def parse_auth_challenge(header: str | None) -> AuthChallenge | None:
    """Parse a WWW-Authenticate value. Unknown or empty input yields None."""
    if not header or not header.strip():
        return None
    header = header.strip()
    lowered = header.lower()
    if lowered.startswith("basic"):
        return _parse_basic_challenge(header[5:])
    if lowered.startswith("digest"):
        return _parse_digest_challenge(header[6:])
    return None


def _parse_basic_challenge(params: str) -> AuthChallenge:
    challenge = AuthChallenge(type=ChallengeType.BASIC, realm=FALLBACK_REALM)
    for part in split_respecting_quotes(params.strip()):
        key, sep, value = part.strip().partition("=")
        if sep and key.strip().lower() == "realm":
            challenge.realm = extract_value(value) or FALLBACK_REALM
            break
    return challenge


def _parse_digest_challenge(params: str) -> AuthChallenge:
    challenge = AuthChallenge(type=ChallengeType.DIGEST)
    for part in split_respecting_quotes(params.strip()):
        key, sep, value = part.strip().partition("=")
        key = key.strip().lower()
        if sep and key in _DIGEST_FIELDS:
            setattr(challenge, key, extract_value(value))
    return challenge


def split_respecting_quotes(text: str) -> list[str]:
    """Split on commas that are not inside an unescaped double-quoted string."""
    parts = []
    current = []
    in_quotes = False
    escaped = False

    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            current.append(ch)
            escaped = True
        elif ch == '"':
            in_quotes = not in_quotes
            current.append(ch)
        elif ch == "," and not in_quotes:
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(ch)

    if current:
        parts.append("".join(current))
    return parts


def extract_value(part: str | None) -> str | None:
    """Extract a parameter value, quoted or not.

    '"value"' -> value, '\\"value\\"' -> value, 'x="a"y' -> a,
    'abc, rest' -> abc. Empty or unparseable input gives None.
    """
    if not part:
        return None
    part = part.strip()

    if len(part) > 1 and part.startswith('"') and part.endswith('"'):
        return part[1:-1]

    if len(part) > 3 and part.startswith('\\"') and part.endswith('\\"'):
        return part[2:-2]

    first = part.find('"')
    last = part.rfind('"')
    if first != -1 and last > first:
        return part[first + 1:last]

    end = len(part)
    for i, ch in enumerate(part):
        if ch in " ,;":
            end = i
            break
    value = part[:end].strip()
    return value or None


def pick_challenges(raw_headers: list[str]) -> dict[ChallengeType, AuthChallenge]:
    """Parse every WWW-Authenticate value, keeping the last one per scheme."""
    found = {}
    for raw in raw_headers:
        challenge = parse_auth_challenge(raw)
        if challenge is None:
            logger.debug(f"Ignoring unrecognized challenge: {raw!r}")
            continue
        found[challenge.type] = challenge
    return found


# ═══════════════════════════════════════════════════════════════
# Credential construction
# ═══════════════════════════════════════════════════════════════

def _md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def build_basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def compute_digest_response(username: str, password: str, realm: str, nonce: str,
                            uri: str, method: str, qop: str | None = None,
                            nc: str = DIGEST_NONCE_COUNT, cnonce: str | None = None) -> str:
    ha1 = _md5_hex(f"{username}:{realm}:{password}")
    ha2 = _md5_hex(f"{method}:{uri}")
    if qop:
        return _md5_hex(f"{ha1}:{nonce}:{nc}:{cnonce or ''}:{qop}:{ha2}")
    return _md5_hex(f"{ha1}:{nonce}:{ha2}")


def generate_cnonce() -> str:
    """Fresh client nonce: hex MD5 of 16 random bytes."""
    return hashlib.md5(secrets.token_bytes(16)).hexdigest()


def _select_qop(offered: str | None) -> str | None:
    if not offered:
        return None
    # Only "auth" is implemented; it is answered even when just auth-int is offered
    return "auth"


def build_digest_auth_header(username: str, password: str, challenge: AuthChallenge,
                             uri: str, method: str, cnonce: str | None = None) -> str:
    """Authorization header value for a Digest challenge."""
    qop = _select_qop(challenge.qop)
    fields = [
        f'username="{username}"',
        f'realm="{challenge.realm}"',
        f'nonce="{challenge.nonce}"',
        f'uri="{uri}"',
    ]
    if qop:
        cnonce = cnonce or generate_cnonce()
        response = compute_digest_response(
            username, password, challenge.realm, challenge.nonce, uri, method,
            qop=qop, nc=DIGEST_NONCE_COUNT, cnonce=cnonce,
        )
        fields += [f"qop={qop}", f"nc={DIGEST_NONCE_COUNT}", f'cnonce="{cnonce}"']
    else:
        response = compute_digest_response(
            username, password, challenge.realm, challenge.nonce, uri, method,
        )
    fields.append(f'response="{response}"')
    if challenge.opaque:
        fields.append(f'opaque="{challenge.opaque}"')
    return "Digest " + ", ".join(fields)


def generate_nonce() -> str:
    """WS-Security nonce: 16 random bytes, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(16)).decode("ascii")


def generate_timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def generate_password_digest(nonce: str, created: str, password: str) -> str:
    """Base64(SHA1(nonce_bytes + created + password))."""
    digest = hashlib.sha1()
    digest.update(base64.b64decode(nonce))
    digest.update(created.encode("utf-8"))
    digest.update(password.encode("utf-8"))
    return base64.b64encode(digest.digest()).decode("ascii")


def escape_xml(text: str | None) -> str:
    if text is None:
        return ""
    return (text.replace("&", "&amp;")
                .replace("<", "&lt;")
                .replace(">", "&gt;")
                .replace('"', "&quot;")
                .replace("'", "&apos;"))


def build_ws_security_header(username: str, password: str,
                             nonce: str | None = None, created: str | None = None) -> str:
    """WS-Security <Security> element carrying a digest UsernameToken."""
    nonce = nonce or generate_nonce()
    created = created or generate_timestamp()
    password_digest = generate_password_digest(nonce, created, password)
    return (
        f'<Security xmlns="{WSSE_NS}" xmlns:wsu="{WSU_NS}">'
        f"<UsernameToken>"
        f"<Username>{escape_xml(username)}</Username>"
        f'<Password Type="{PASSWORD_DIGEST_TYPE}">{password_digest}</Password>'
        f'<Nonce EncodingType="{BASE64_ENCODING_TYPE}">{nonce}</Nonce>'
        f"<wsu:Created>{created}</wsu:Created>"
        f"</UsernameToken>"
        f"</Security>"
    )


# ═══════════════════════════════════════════════════════════════
# Transports and scheme strategies
# ═══════════════════════════════════════════════════════════════

@dataclass
class TransportResponse:
    status: int                      # 0 when the request never got an answer
    challenges: list[str] = field(default_factory=list)
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def reachable(self) -> bool:
        return self.status > 0


class AuthTransport(Protocol):
    method: str
    uri: str
    supports_ws_security: bool

    async def send(self, authorization: str | None = None,
                   security: str | None = None) -> TransportResponse:
        ...

    def is_accepted(self, response: TransportResponse) -> bool:
        ...


def describe_rejection(response: TransportResponse) -> str:
    if response.error:
        return response.error
    return f"Rejected with status {response.status}"


class SchemeUnavailable(Exception):
    """The strategy cannot be applied to this transport / challenge."""


@dataclass
class AuthOutcome:
    method: AuthMethod
    accepted: bool
    reason: str = ""
    response: TransportResponse | None = None
    attempted: bool = True


class AuthStrategy:
    method: AuthMethod = AuthMethod.NONE
    challenge_type: ChallengeType | None = None

    def build(self, transport: AuthTransport, challenge: AuthChallenge | None,
              credential: Credential | None) -> dict[str, str]:
        """Keyword arguments for transport.send(); raise SchemeUnavailable if n/a."""
        raise NotImplementedError

    async def attempt(self, transport: AuthTransport, challenge: AuthChallenge | None,
                      credential: Credential | None) -> AuthOutcome:
        try:
            kwargs = self.build(transport, challenge, credential)
        except SchemeUnavailable as e:
            return AuthOutcome(self.method, accepted=False, reason=str(e), attempted=False)

        response = await transport.send(**kwargs)
        if transport.is_accepted(response):
            return AuthOutcome(self.method, accepted=True, response=response)
        return AuthOutcome(self.method, accepted=False,
                           reason=describe_rejection(response), response=response)


class NoAuthStrategy(AuthStrategy):
    method = AuthMethod.NONE

    def build(self, transport, challenge, credential):
        return {}


class BasicAuthStrategy(AuthStrategy):
    method = AuthMethod.BASIC
    challenge_type = ChallengeType.BASIC

    def build(self, transport, challenge, credential):
        if credential is None:
            raise SchemeUnavailable("No credential for Basic authentication")
        return {"authorization": build_basic_auth(credential.username, credential.password)}


class DigestAuthStrategy(AuthStrategy):
    method = AuthMethod.DIGEST
    challenge_type = ChallengeType.DIGEST

    def build(self, transport, challenge, credential):
        if credential is None:
            raise SchemeUnavailable("No credential for Digest authentication")
        if not is_valid_challenge(challenge):
            raise SchemeUnavailable("No valid Digest challenge offered")
        return {"authorization": build_digest_auth_header(
            credential.username, credential.password, challenge,
            uri=transport.uri, method=transport.method,
        )}


class WsSecurityStrategy(AuthStrategy):
    method = AuthMethod.WS_SECURITY

    def build(self, transport, challenge, credential):
        if credential is None:
            raise SchemeUnavailable("No credential for WS-Security")
        if not transport.supports_ws_security:
            raise SchemeUnavailable("WS-Security not supported by this transport")
        return {"security": build_ws_security_header(credential.username, credential.password)}


def default_strategies() -> list[AuthStrategy]:
    return [NoAuthStrategy(), BasicAuthStrategy(), DigestAuthStrategy(), WsSecurityStrategy()]


_STRATEGY_BY_METHOD = {s.method: s for s in default_strategies()}


# ═══════════════════════════════════════════════════════════════
# Negotiation
# ═══════════════════════════════════════════════════════════════

@dataclass
class AuthSession:
    """An accepted scheme + credential, reused for later requests."""
    method: AuthMethod
    credential: Credential | None = None
    challenge: AuthChallenge | None = None

    async def send(self, transport: AuthTransport) -> TransportResponse:
        strategy = _STRATEGY_BY_METHOD[self.method]
        response = await transport.send(**strategy.build(transport, self.challenge, self.credential))

        # Digest nonces expire; retry once with the fresh challenge
        if self.method == AuthMethod.DIGEST and response.status == 401:
            fresh = pick_challenges(response.challenges).get(ChallengeType.DIGEST)
            if is_valid_challenge(fresh):
                logger.debug(f"Refreshing Digest nonce (stale={fresh.stale})")
                self.challenge = fresh
                response = await transport.send(
                    **strategy.build(transport, self.challenge, self.credential)
                )
        return response


@dataclass
class NegotiationResult:
    success: bool
    method: AuthMethod | None = None
    credential: Credential | None = None
    reason: str = ""
    reachable: bool = True
    session: AuthSession | None = None
    response: TransportResponse | None = None
    outcomes: list[AuthOutcome] = field(default_factory=list)


class AuthNegotiator:
    """Try each scheme strategy in order, stopping at the first accepted one."""

    def __init__(self, strategies: list[AuthStrategy] | None = None):
        self.strategies = strategies if strategies is not None else default_strategies()

    async def negotiate(self, transport: AuthTransport,
                        credential: Credential | None) -> NegotiationResult:
        challenges: dict[ChallengeType, AuthChallenge] = {}
        outcomes: list[AuthOutcome] = []
        last_reason = "No authentication scheme could be attempted"

        for strategy in self.strategies:
            challenge = challenges.get(strategy.challenge_type) if strategy.challenge_type else None
            outcome = await strategy.attempt(transport, challenge, credential)
            outcomes.append(outcome)

            if outcome.response is not None:
                challenges.update(pick_challenges(outcome.response.challenges))

            if outcome.accepted:
                logger.info(f"{transport.method} {transport.uri}: accepted {strategy.method.name}"
                            f" with {credential}")
                session = AuthSession(
                    method=strategy.method,
                    credential=credential if strategy.method != AuthMethod.NONE else None,
                    challenge=challenge,
                )
                return NegotiationResult(
                    success=True, method=strategy.method, credential=credential,
                    session=session, response=outcome.response, outcomes=outcomes,
                )

            if not outcome.attempted:
                logger.debug(f"Skipping {strategy.method.name}: {outcome.reason}")
                continue

            last_reason = f"{strategy.method.name}: {outcome.reason}"
            logger.debug(f"{transport.method} {transport.uri}: {last_reason}")

            if outcome.response is not None and not outcome.response.reachable:
                return NegotiationResult(
                    success=False, credential=credential, reason=last_reason,
                    reachable=False, outcomes=outcomes,
                )

        return NegotiationResult(success=False, credential=credential,
                                 reason=last_reason, outcomes=outcomes)
