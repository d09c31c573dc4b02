"""Consent validation and persistence."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from identity_service.core.config import settings
from identity_service.models.consent import REQUIRED_CONSENTS, ConsentRecord, ConsentType

BUNDLED_CONSENT_METHOD = "bundled_consent"


def missing_required_consents(acknowledgments: dict[str, Any] | None) -> list[str]:
    """Required consent types not granted in ``acknowledgments``.

    Acknowledgments are optional; when absent nothing is missing.
    """
    if acknowledgments is None:
        return []
    return [
        consent.value for consent in REQUIRED_CONSENTS if not acknowledgments.get(consent.value)
    ]


class ConsentService:
    """Writes ``consent_records`` rows. Never commits."""

    def __init__(self, db: Session, default_version: str | None = None):
        self.db = db
        self.default_version = default_version or settings.CONSENT_VERSION

    def record_acknowledgments(
        self, user_id: UUID, acknowledgments: dict[str, Any] | None
    ) -> list[ConsentRecord]:
        """Upsert one record per granted consent type."""
        if not acknowledgments:
            return []

        version = str(acknowledgments.get("version") or self.default_version)
        records = []
        for consent in ConsentType:
            if not acknowledgments.get(consent.value):
                continue
            record = (
                self.db.query(ConsentRecord)
                .filter(
                    ConsentRecord.user_id == user_id,
                    ConsentRecord.consent_type == consent.value,
                )
                .first()
            )
            if record is None:
                record = ConsentRecord(
                    user_id=user_id,
                    consent_type=consent.value,
                    consent_method=BUNDLED_CONSENT_METHOD,
                )
                self.db.add(record)
            record.consent_given = True
            record.consent_version = version
            record.withdrawn_at = None
            records.append(record)

        self.db.flush()
        return records
