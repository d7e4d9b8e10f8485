from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from supportdesk.models.file import File

logger = logging.getLogger(__name__)


def create_file_record(
    db: Session,
    *,
    name: str,
    key: str,
    mimetype: str,
    size: int,
    is_inline: bool,
    message_id: str | None = None,
) -> File:
    file = File(
        message_id=message_id,
        name=name,
        key=key,
        mimetype=mimetype,
        size=size,
        is_inline=is_inline,
        is_public=False,
    )
    db.add(file)
    db.flush()
    return file


def finish_file_upload(db: Session, *, file_slugs: list[str], message_id: str) -> int:
    """Attach previously uploaded, still unattached files to *message_id*."""
    if not file_slugs:
        return 0
    files = (
        db.query(File)
        .filter(File.slug.in_(file_slugs), File.message_id.is_(None))
        .all()
    )
    for file in files:
        file.message_id = message_id
    db.flush()
    logger.debug("finish_file_upload: attached %d file(s) to message %s", len(files), message_id)
    return len(files)
