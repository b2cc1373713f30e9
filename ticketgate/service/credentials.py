from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ticketgate.logging import get_logger
from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ticketgate.service.tokens import generate_token, hash_token
from ticketgate.storage.common import AuthStore, generate_uuid
from ticketgate.storage.errors import ConstraintViolation
from ticketgate.storage.models import Credential, utcnow

logger = get_logger(__name__)

CREDENTIAL_SECRET_BYTES = 32
MAX_CREDENTIAL_NAME = 64


@dataclass
class IssuedCredential:
    """A freshly created credential plus its raw secret, shown exactly once."""

    credential: Credential
    secret: str


class CredentialService:
    """Organization-scoped bearer credentials, hashed at rest.

    Methods are synchronous so they can run inside ``store.atomic()``
    together with the operation they authorize.
    """

    def __init__(self, store: AuthStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def create(self, organization_id: str, name: str) -> IssuedCredential:
        name = (name or "").strip()
        if not name or len(name) > MAX_CREDENTIAL_NAME:
            raise ValidationError(
                f"credential name must be 1-{MAX_CREDENTIAL_NAME} characters",
                detail={"field": "name"},
            )
        secret = generate_token(CREDENTIAL_SECRET_BYTES)
        credential = Credential(
            id=generate_uuid(),
            organization_id=organization_id,
            name=name,
            secret_hash=hash_token(secret),
            created_at=self.clock(),
        )
        try:
            self.store.create_credential(credential)
        except ConstraintViolation as exc:
            raise ConflictError("could not create credential", detail=exc.detail) from exc
        logger.info(
            "credential_created",
            credential_id=credential.id,
            organization_id=organization_id,
        )
        return IssuedCredential(credential=credential, secret=secret)

    def validate(self, raw_secret: Optional[str], organization_id: Optional[str]) -> Optional[Credential]:
        if not raw_secret or not organization_id:
            return None
        credential = self.store.find_credential_by_hash(hash_token(raw_secret), organization_id)
        if not credential:
            return None
        if credential.is_revoked:
            logger.warning("credential_revoked_use", credential_id=credential.id)
            return None
        return credential

    def touch_last_used(self, credential_id: str) -> None:
        if not self.store.touch_credential(credential_id, self.clock()):
            # Revoked or deleted between validate and touch; abort the unit
            raise AuthenticationError("Invalid credential")

    def revoke(self, credential_id: str, *, organization_id: Optional[str] = None) -> Credential:
        credential = self.store.get_credential(credential_id)
        if not credential or (
            organization_id is not None and credential.organization_id != organization_id
        ):
            raise NotFoundError("credential not found")
        revoked_at = self.clock()
        if self.store.revoke_credential(credential_id, revoked_at):
            logger.info(
                "credential_revoked",
                credential_id=credential_id,
                organization_id=credential.organization_id,
            )
        return self.store.get_credential(credential_id)

    def list(self, organization_id: str) -> List[Credential]:
        return self.store.list_credentials(organization_id)
