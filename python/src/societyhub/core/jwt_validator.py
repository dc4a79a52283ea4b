"""
JWT verification for auth backend access tokens.

Supabase (GoTrue) signs access tokens with the project's JWT secret
(HS256, audience "authenticated"). Verifying the signature lets the auth
provider trust the ``sub`` claim it uses as the profile id.
"""

import logging
import time
from typing import Dict

from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class JWTValidationError(Exception):
    """Raised when JWT validation fails."""
    pass


class JWTValidator:
    """
    Signature validator for auth backend access tokens.

    Security Features:
    - HS256 signature verification
    - Expiration checking
    - Required claim validation
    """

    REQUIRED_CLAIMS = ("sub", "exp")

    def __init__(self, secret: str, audience: str = "authenticated", algorithm: str = "HS256"):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.audience = audience
        self.algorithm = algorithm

    def verify_token(self, token: str) -> Dict:
        """
        Verify JWT signature and return payload.

        Args:
            token: JWT token string

        Returns:
            Decoded JWT payload

        Raises:
            JWTValidationError: If verification fails
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_aud": True,
                }
            )
        except jwt.ExpiredSignatureError:
            logger.warning("JWT expired")
            raise JWTValidationError("Token has expired")
        except jwt.JWTClaimsError as e:
            logger.warning(f"JWT claims error: {e}")
            raise JWTValidationError(f"Invalid token claims: {e}")
        except JWTError as e:
            logger.error(f"JWT verification failed: {e}")
            raise JWTValidationError(f"Invalid token signature: {e}")

        missing_claims = [claim for claim in self.REQUIRED_CLAIMS if claim not in payload]
        if missing_claims:
            raise JWTValidationError(
                f"Missing required claims: {', '.join(missing_claims)}"
            )

        exp = payload.get("exp")
        if exp and time.time() >= exp:
            raise JWTValidationError(f"Token expired at {exp}")

        logger.debug(f"JWT verified successfully for subject: {payload.get('sub')}")
        return payload

    def extract_subject(self, token: str) -> str:
        """
        Extract the subject (user id) from a verified token.

        Raises:
            JWTValidationError: If verification fails
        """
        return self.verify_token(token)["sub"]
