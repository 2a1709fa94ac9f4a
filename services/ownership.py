"""Ownership checks run before any read or mutation of a user's series."""

from models import Series, Tag
from services.errors import Forbidden, NotFound


def get_owned_series(owner_id, series_id):
    """Series owned by `owner_id`. Someone else's series is reported as missing."""
    if owner_id is None or series_id is None:
        raise NotFound(resource_type='Series')
    series = Series.query.filter_by(id=series_id, owner_id=owner_id).first()
    if not series:
        raise NotFound(resource_type='Series')
    return series


def get_owned_tags(owner_id, tag_ids):
    """Resolve tag ids for linking. Unknown ids are NotFound, other users' tags Forbidden."""
    ids = []
    for raw in tag_ids or []:
        try:
            tag_id = int(raw)
        except (TypeError, ValueError):
            raise NotFound(resource_type='Tag') from None
        if tag_id not in ids:
            ids.append(tag_id)
    if not ids:
        return []
    tags = Tag.query.filter(Tag.id.in_(ids)).all()
    by_id = {tag.id: tag for tag in tags}
    missing = [tag_id for tag_id in ids if tag_id not in by_id]
    if missing:
        raise NotFound(resource_type='Tag')
    if any(tag.owner_id != owner_id for tag in tags):
        raise Forbidden("Tags must belong to the series owner")
    return [by_id[tag_id] for tag_id in ids]
