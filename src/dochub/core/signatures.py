from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from dochub.db.models import DigitalSignature
from dochub.db.repositories import Repository
from dochub.errors import NoSignatureAvailable, NotFound
from dochub.types import SignaturePolicy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignatureImage:
    signature_id: int
    authority_name: str
    authority_designation: str
    data: bytes
    mime_type: str


class SignatureSelector:
    def __init__(self, repo: Repository):
        self.repo = repo

    def select(self, policy: SignaturePolicy) -> DigitalSignature:
        if policy.signature_id is not None:
            signature = self.repo.get_signature(policy.signature_id)
            if signature is None or not signature.is_active:
                raise NotFound("signature", policy.signature_id)
            return signature

        if not policy.use_latest:
            raise NoSignatureAvailable()

        signature = self.repo.get_latest_active_signature()
        if signature is None:
            raise NoSignatureAvailable()
        return signature

    def load_image(self, signature: DigitalSignature) -> SignatureImage:
        data = signature.image_data or b""
        if not data and signature.image_path:
            path = Path(signature.image_path)
            if path.is_file():
                data = path.read_bytes()
            else:
                logger.warning("Signature image missing signature_id=%s path=%s", signature.id, path)
        return SignatureImage(
            signature_id=signature.id,
            authority_name=signature.authority_name,
            authority_designation=signature.authority_designation,
            data=data,
            mime_type=signature.image_mime or "image/png",
        )
