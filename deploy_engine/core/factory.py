#deploy_engine\core\factory.py
import re
from typing import Optional
from uuid import uuid4

from deploy_engine.core.models import ApplicationRecord, SourceKind
from deploy_engine.core.validation import validate_new_application


def name_from_source(source_location: str) -> str:
    """`https://example.com/org/my-app.git` -> `my-app`."""
    tail = source_location.rstrip("/").split("/")[-1]
    if tail.endswith(".git"):
        tail = tail[:-4]
    return tail or "app"


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "app"


class ApplicationFactory:
    @staticmethod
    def new_id(name: str) -> str:
        return f"{slugify(name)}-{uuid4().hex[:8]}"

    @staticmethod
    def from_source(
        *,
        source_location: str,
        auto_update: bool = False,
        auto_update_interval_minutes: int = 60,
    ) -> ApplicationRecord:
        name = name_from_source(source_location)
        record = ApplicationRecord(
            application_id=ApplicationFactory.new_id(name),
            name=name,
            source_kind=SourceKind.SOURCE_CONTROLLED,
            source_location=source_location,
            auto_update=auto_update,
            auto_update_interval_minutes=auto_update_interval_minutes,
        )

        validate_new_application(record)
        return record

    @staticmethod
    def from_descriptor(
        *,
        name: Optional[str],
        auto_update_interval_minutes: int = 60,
    ) -> ApplicationRecord:
        name = name or "app"
        record = ApplicationRecord(
            application_id=ApplicationFactory.new_id(name),
            name=name,
            source_kind=SourceKind.DESCRIPTOR_ONLY,
            auto_update_interval_minutes=auto_update_interval_minutes,
        )

        validate_new_application(record)
        return record
