"""
Field mapping tables and transforms
Local field -> remote field, with a small library of value transforms
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Any, List, Optional, Tuple

from storesync.integrations.base import ValidationFailure, UnresolvedReferenceError, IdResolver

_DATE_FORMATS = {
    'YYYY-MM-DD': '%Y-%m-%d',
    'MM/DD/YYYY': '%m/%d/%Y',
    'DD-MM-YYYY': '%d-%m-%Y',
}


class TransformError(ValueError):
    """A transform could not be applied to a value"""
    pass


def _parse_date(value: Any, fmt: str) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if fmt == 'ISO8601':
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return datetime.fromisoformat(text)
    if fmt not in _DATE_FORMATS:
        raise TransformError(f"Unknown date format '{fmt}'")
    return datetime.strptime(text, _DATE_FORMATS[fmt])


def date_format(value: Any, from_format: str, to_format: str) -> str:
    try:
        parsed = _parse_date(value, from_format)
    except ValueError as e:
        raise TransformError(f"'{value}' is not a {from_format} date") from e
    if to_format == 'ISO8601':
        return parsed.isoformat()
    if to_format not in _DATE_FORMATS:
        raise TransformError(f"Unknown date format '{to_format}'")
    return parsed.strftime(_DATE_FORMATS[to_format])


def currency(value: Any) -> str:
    """Round half-up to two decimals"""
    try:
        amount = Decimal(str(value).strip().replace(',', ''))
    except InvalidOperation as e:
        raise TransformError(f"'{value}' is not an amount") from e
    return str(amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


def normalize_phone(value: Any, country_code: str = "1") -> str:
    """E.164-style: +<country><number>, national numbers get the default country code"""
    text = str(value).strip()
    digits = re.sub(r'\D', '', text)
    if not digits:
        return ""
    if text.startswith('+'):
        return f"+{digits}"
    if text.startswith('00'):
        return f"+{digits[2:]}"
    if len(digits) == 10:
        return f"+{country_code}{digits}"
    if len(digits) == 11 and digits.startswith(country_code):
        return f"+{digits}"
    return f"+{digits}"


def _split_step(step: str) -> Tuple[str, List[str]]:
    name, _, rest = step.partition(':')
    return name.strip(), (rest.split(':') if rest else [])


def apply_transform(value: Any, step: str) -> Any:
    """Apply one synchronous transform ('trim', 'truncate:40', 'date_format:ISO8601:YYYY-MM-DD', ...)"""
    name, args = _split_step(step)
    if value is None:
        return None

    if name == 'uppercase':
        return str(value).upper()
    if name == 'lowercase':
        return str(value).lower()
    if name == 'trim':
        return str(value).strip()
    if name == 'string':
        return str(value)
    if name == 'number':
        try:
            return float(Decimal(str(value)))
        except InvalidOperation as e:
            raise TransformError(f"'{value}' is not a number") from e
    if name == 'integer':
        try:
            return int(Decimal(str(value)))
        except InvalidOperation as e:
            raise TransformError(f"'{value}' is not an integer") from e
    if name == 'truncate':
        return str(value)[:int(args[0])]
    if name == 'date_format':
        return date_format(value, args[0], args[1])
    if name == 'currency':
        return currency(value)
    if name == 'phone':
        return normalize_phone(value, args[0] if args else "1")
    if name == 'replace':
        return str(value).replace(args[0], args[1] if len(args) > 1 else "")
    if name == 'split':
        delimiter = args[0] if args and args[0] else ' '
        index = int(args[1]) if len(args) > 1 else 0
        parts = str(value).split(delimiter)
        return parts[index] if -len(parts) <= index < len(parts) else ""
    raise TransformError(f"Unknown transform '{name}'")


def get_path(record: Dict[str, Any], path: str) -> Any:
    current: Any = record
    for part in path.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def set_path(record: Dict[str, Any], path: str, value: Any):
    parts = path.split('.')
    current = record
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


@dataclass
class FieldMapping:
    """One local field mapped to one (possibly nested) remote field"""
    local: str
    remote: str
    transforms: List[str] = field(default_factory=list)
    required: bool = False
    max_length: Optional[int] = None
    inbound: bool = True

    @property
    def lookup_entity(self) -> Optional[str]:
        for step in self.transforms:
            name, args = _split_step(step)
            if name == 'lookup':
                return args[0]
        return None

    def transform(self, value: Any) -> Any:
        for step in self.transforms:
            if step.startswith('lookup'):
                continue
            value = apply_transform(value, step)
        return value


@dataclass
class EntityMapping:
    """Mapping table for one entity type on one platform"""
    entity_type: str
    remote_type: str
    fields: List[FieldMapping] = field(default_factory=list)

    def _issues(self, record: Dict[str, Any], partial: bool) -> List[str]:
        issues = []
        for mapping in self.fields:
            raw = get_path(record, mapping.local)
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                # Sparse updates only check the fields they carry
                if mapping.required and not (partial and raw is None):
                    issues.append(f"{mapping.local} is required")
                continue
            try:
                value = mapping.transform(raw)
            except TransformError as e:
                issues.append(f"{mapping.local}: {e}")
                continue
            if mapping.max_length is not None and isinstance(value, str) \
                    and len(value) > mapping.max_length:
                issues.append(f"{mapping.local} exceeds {mapping.max_length} characters ({len(value)})")
        return issues

    def validate(self, record: Dict[str, Any], partial: bool = False):
        """Raise ValidationFailure listing every violated constraint"""
        issues = self._issues(record, partial)
        if issues:
            raise ValidationFailure(f"{self.entity_type} failed validation: {'; '.join(issues)}",
                                    errors=issues)

    async def to_remote(self, record: Dict[str, Any], resolver: Optional[IdResolver] = None,
                        partial: bool = False) -> Dict[str, Any]:
        """
        Build the remote payload for a local record.

        partial=True maps only the fields present in the record (sparse updates).
        """
        self.validate(record, partial=partial)
        payload: Dict[str, Any] = {}
        for mapping in self.fields:
            raw = get_path(record, mapping.local)
            if raw is None:
                continue
            value = mapping.transform(raw)
            lookup_entity = mapping.lookup_entity
            if lookup_entity:
                if resolver is None:
                    raise UnresolvedReferenceError(f"No resolver for {lookup_entity} reference {value}")
                remote_ref = await resolver(lookup_entity, str(value))
                if remote_ref is None:
                    raise UnresolvedReferenceError(
                        f"{lookup_entity} {value} referenced by {self.entity_type}.{mapping.local} "
                        f"has no remote counterpart yet")
                value = remote_ref
            set_path(payload, mapping.remote, value)
        return payload

    async def from_remote(self, data: Dict[str, Any],
                          reverse_resolver: Optional[IdResolver] = None) -> Dict[str, Any]:
        """Local record layout of a remote payload (transforms are not reversed)"""
        record: Dict[str, Any] = {}
        for mapping in self.fields:
            if not mapping.inbound:
                continue
            value = get_path(data, mapping.remote)
            if value is None:
                continue
            lookup_entity = mapping.lookup_entity
            if lookup_entity and reverse_resolver is not None:
                local_ref = await reverse_resolver(lookup_entity, str(value))
                if local_ref is None:
                    continue
                value = local_ref
            set_path(record, mapping.local, value)
        return record
