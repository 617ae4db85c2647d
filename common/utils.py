import uuid

from django.db import IntegrityError, transaction


def parse_uuid(value):
    """Return ``value`` as a UUID, or None when it is empty or malformed."""
    if not value:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


def next_daily_reference(queryset, prefix, day):
    """Next free ``PREFIX-YYYYMMDD-NNNN`` reference for ``day`` among ``queryset``."""
    stem = f"{prefix}-{day:%Y%m%d}-"
    last = (
        queryset.filter(reference__startswith=stem)
        .order_by("-reference")
        .values_list("reference", flat=True)
        .first()
    )
    sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{stem}{sequence:04d}"


def create_with_reference(model, *, prefix, day, attempts=5, **fields):
    """Insert a ``model`` row under the next daily reference.

    Concurrent writers can read the same last reference; the one that loses
    the unique constraint retries with a fresh number.
    """
    for attempt in range(1, attempts + 1):
        reference = next_daily_reference(model.objects.all(), prefix, day)
        try:
            with transaction.atomic():
                return model.objects.create(reference=reference, **fields)
        except IntegrityError:
            if attempt == attempts or not model.objects.filter(reference=reference).exists():
                raise
