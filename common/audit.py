import json

from django.core.serializers.json import DjangoJSONEncoder

from common.utils import parse_uuid
from core.models import AuditLog

# Never persisted in audit snapshots, at any nesting depth.
REDACTED_KEYS = frozenset({"keeper_code", "controller_code", "password"})


def _redact(value):
    if isinstance(value, dict):
        return {key: _redact(item) for key, item in value.items() if key not in REDACTED_KEYS}
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def snapshot(value):
    """JSON-normalize a serializer payload and drop secret fields."""
    if value is None:
        return None
    return _redact(json.loads(json.dumps(value, cls=DjangoJSONEncoder)))


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def create_audit_log(*, action, entity, entity_id=None, actor=None, branch=None, before=None, after=None, request_id=None):
    return AuditLog.objects.create(
        actor=actor,
        branch=branch,
        action=action,
        entity=entity,
        entity_id=parse_uuid(entity_id),
        before_snapshot=snapshot(before),
        after_snapshot=snapshot(after),
        request_id=request_id,
    )


def create_audit_log_from_request(request, *, action, entity, entity_id=None, before_snapshot=None, after_snapshot=None, branch=None):
    user = getattr(request, "user", None)
    if user is not None and not user.is_authenticated:
        user = None
    if branch is None and user is not None:
        branch = getattr(user, "branch", None)
    return create_audit_log(
        action=action,
        entity=entity,
        entity_id=entity_id,
        actor=user,
        branch=branch,
        before=before_snapshot,
        after=after_snapshot,
        request_id=get_request_id(request),
    )
