"""
Analyzer Config Store

Single active analyzer configuration with an append-only version history.
Every accepted proposal (including rollbacks) mints a new version; the
history append and the active swap happen in one transaction.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from numbers import Number
from typing import Optional, List, Dict, Any

from sqlalchemy.exc import IntegrityError

from regime_tracker.config.defaults import (
    DEFAULT_CONFIG, REQUIRED_KEYS, EXPECTED_TIMEFRAMES, WEIGHTS_SUM_TOLERANCE,
    MAX_DOCUMENT_BYTES, MAX_DIFF_CHANGES, MIN_NOTES_LENGTH, INITIAL_VERSION
)
from regime_tracker.errors import ValidationError, NotFoundError, VersionConflict
from regime_tracker.storage.database import db_manager
from regime_tracker.storage.models import AnalyzerConfig, AnalyzerConfigHistory
from regime_tracker.timeutils import utc_now

logger = logging.getLogger(__name__)

ACTIONS = ('initial', 'update', 'rollback', 'ai_import')

# Actions that must be based on the currently active version
OPTIMISTIC_ACTIONS = ('update', 'ai_import')


@dataclass
class ValidationResult:
    valid: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.valid:
            return 'invalid'
        return 'valid_with_warnings' if self.warnings else 'valid'


@dataclass
class ActiveConfig:
    version: str
    document: Dict[str, Any]
    validation_status: str
    created_by: Optional[str]
    notes: Optional[str]
    created_at: Optional[datetime]


@dataclass
class ConfigVersion:
    version: str
    action: str
    document: Dict[str, Any]
    previous_document: Optional[Dict[str, Any]]
    diff_summary: Optional[Dict[str, Any]]
    based_on_version: Optional[str]
    created_by: Optional[str]
    notes: Optional[str]
    created_at: Optional[datetime]


def _is_number(value) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def resolve_bounds(document, issues: List[str] = None) -> Dict[str, Dict[str, Any]]:
    """
    Bounds sections of a document merged over the defaults.

    Malformed sections or limits fall back to the default values; when an
    ``issues`` list is given, each one is reported there.
    """
    def report(message):
        if issues is not None:
            issues.append(message)

    bounds = document.get('bounds') if isinstance(document, dict) else None
    if bounds is None:
        bounds = {}
    elif not isinstance(bounds, dict):
        report(f"bounds must be a mapping, got {type(bounds).__name__}")
        bounds = {}

    resolved = {}
    for name, defaults in DEFAULT_CONFIG['bounds'].items():
        section = bounds.get(name)
        merged = dict(defaults)
        if section is not None and not isinstance(section, dict):
            report(f"bounds.{name} must be a mapping, got {type(section).__name__}")
        elif section:
            for key, value in section.items():
                if key not in defaults:
                    continue
                if not _is_number(value):
                    report(f"bounds.{name}.{key} must be numeric, got {value!r}")
                    continue
                merged[key] = value
        if 'min' in merged and merged['min'] > merged['max']:
            report(f"bounds.{name} min {merged['min']} is above max {merged['max']}")
            merged['min'], merged['max'] = defaults['min'], defaults['max']
        resolved[name] = merged
    return resolved


def next_version(version: str) -> str:
    """Increment the patch component of a semantic version"""
    try:
        major, minor, patch = (int(part) for part in version.split('.'))
    except (AttributeError, ValueError):
        raise ValidationError(f"Unparseable config version: {version!r}")
    return f"{major}.{minor}.{patch + 1}"


def flatten(document, prefix: str = '') -> Dict[str, Any]:
    """Flatten nested mappings into dotted paths; lists are leaf values"""
    flat = {}
    for key, value in document.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            flat.update(flatten(value, path + '.'))
        else:
            flat[path] = value
    return flat


def compute_diff(old: Optional[dict], new: dict) -> Dict[str, Any]:
    """
    Structural diff between two configuration documents.

    Paths under ``meta`` are ignored. Numeric changes carry the percent
    change relative to the old value.

    Returns:
        Dict with the first MAX_DIFF_CHANGES changes and the total count
    """
    old_flat = flatten(old or {})
    new_flat = flatten(new)

    changes = []
    for path in sorted(set(old_flat) | set(new_flat)):
        if path == 'meta' or path.startswith('meta.'):
            continue
        old_value = old_flat.get(path)
        new_value = new_flat.get(path)
        if old_value == new_value and (path in old_flat) == (path in new_flat):
            continue

        change = {'path': path, 'old': old_value, 'new': new_value}
        if _is_number(old_value) and _is_number(new_value) and old_value != 0:
            change['delta_pct'] = round((new_value - old_value) / abs(old_value) * 100, 2)
        changes.append(change)

    return {
        'changes': changes[:MAX_DIFF_CHANGES],
        'total_changes': len(changes),
    }


def validate_document(document) -> ValidationResult:
    """
    Check a configuration document's structure and bounds.

    Pure function: nothing is read from or written to the store.
    """
    issues = []
    warnings = []

    if not isinstance(document, dict):
        return ValidationResult(valid=False, issues=['Config document must be a mapping'])

    try:
        encoded = json.dumps(document, allow_nan=False)
    except (TypeError, ValueError) as e:
        return ValidationResult(valid=False, issues=[f"Config document is not JSON-serialisable: {e}"])

    if len(encoded.encode('utf-8')) > MAX_DOCUMENT_BYTES:
        issues.append(f"Config document exceeds {MAX_DOCUMENT_BYTES} bytes")

    for key in REQUIRED_KEYS:
        if not document.get(key):
            issues.append(f"Missing required key: {key}")

    bounds = resolve_bounds(document, issues)

    weights = document.get('weights')
    signals = weights.get('signals') if isinstance(weights, dict) else None
    if isinstance(signals, dict) and signals:
        weight_bounds = bounds['weights']
        numeric = {}
        for key, value in signals.items():
            if not _is_number(value):
                issues.append(f"Weight '{key}' must be numeric, got {value!r}")
                continue
            numeric[key] = value
            if value < weight_bounds['min']:
                issues.append(f"Weight '{key}' = {value} is below minimum {weight_bounds['min']}")
            if value > weight_bounds['max']:
                issues.append(f"Weight '{key}' = {value} is above maximum {weight_bounds['max']}")
        total = sum(numeric.values())
        if abs(total - 1.0) > WEIGHTS_SUM_TOLERANCE:
            issues.append(f"Signal weights must sum to 1.0, got {total:.4f}")
    elif weights:
        issues.append("Missing weights.signals")

    penalties = document.get('penalties')
    if isinstance(penalties, dict):
        penalty_bounds = bounds['penalties']
        for key, value in penalties.items():
            if not _is_number(value):
                continue
            if value < penalty_bounds['min']:
                issues.append(f"Penalty '{key}' = {value} is below minimum {penalty_bounds['min']}")
            if value > penalty_bounds['max']:
                issues.append(f"Penalty '{key}' = {value} is above maximum {penalty_bounds['max']}")

    thresholds = document.get('thresholds')
    if isinstance(thresholds, dict):
        for timeframe in EXPECTED_TIMEFRAMES:
            if timeframe not in thresholds:
                warnings.append(f"Missing thresholds for timeframe: {timeframe}")

    return ValidationResult(valid=not issues, issues=issues, warnings=warnings)


def validate_delta(current: dict, proposed: dict) -> ValidationResult:
    """
    Check that weights and penalties move by at most their max step percent.

    Step limits come from the proposed document's bounds when it carries a
    mapping there, otherwise from the current document's.
    """
    violations = []
    source = proposed if isinstance(proposed.get('bounds'), dict) else current
    bounds = resolve_bounds(source)

    sections = (
        ('Weight', (current.get('weights') or {}).get('signals'),
         (proposed.get('weights') or {}).get('signals'),
         bounds['weights']['maxStepPct']),
        ('Penalty', current.get('penalties'), proposed.get('penalties'),
         bounds['penalties']['maxStepPct']),
    )

    for label, old_section, new_section, max_step in sections:
        if not isinstance(old_section, dict) or not isinstance(new_section, dict):
            continue
        for key, new_value in new_section.items():
            old_value = old_section.get(key)
            if not (_is_number(old_value) and _is_number(new_value)) or old_value == 0:
                continue
            delta_pct = abs((new_value - old_value) / old_value) * 100
            if delta_pct > max_step:
                violations.append(
                    f"{label} '{key}' delta {delta_pct:.1f}% exceeds max {max_step}%"
                )

    return ValidationResult(valid=not violations, issues=violations)


class ConfigStore:
    """
    Version-controlled register for the analyzer configuration.
    """

    def __init__(self, db=None):
        self.db = db or db_manager

    def validate(self, document) -> ValidationResult:
        return validate_document(document)

    def get_active(self) -> ActiveConfig:
        """
        Current active configuration.

        Raises:
            NotFoundError: if the store was never seeded
        """
        with self.db.get_session() as session:
            row = session.get(AnalyzerConfig, 1)
            if row is None:
                raise NotFoundError("No active analyzer config; store has not been seeded")
            return ActiveConfig(
                version=row.version,
                document=copy.deepcopy(row.config_json),
                validation_status=row.validation_status,
                created_by=row.created_by,
                notes=row.notes,
                created_at=row.created_at,
            )

    def propose(self, document: dict, author: str, notes: str,
                based_on_version: str = None, action: str = 'update',
                enforce_step_bounds: bool = True) -> str:
        """
        Validate and activate a new configuration document.

        Args:
            document: Full configuration document
            author: Who proposed the change
            notes: Human-readable reason (at least 5 characters)
            based_on_version: Version the proposal was derived from. For
                update and ai_import it must match the active version.
            action: History action tag
            enforce_step_bounds: Apply per-step delta limits on updates

        Returns:
            The newly minted version

        Raises:
            ValidationError: malformed document, notes or step size
            VersionConflict: active version changed since based_on_version
        """
        if action not in ACTIONS:
            raise ValidationError(f"Unknown config action: {action}")
        if not notes or len(notes.strip()) < MIN_NOTES_LENGTH:
            raise ValidationError(f"Notes must be at least {MIN_NOTES_LENGTH} characters")

        result = self.validate(document)
        if not result.valid:
            raise ValidationError(
                f"Config validation failed: {'; '.join(result.issues)}", result.issues
            )
        document = json.loads(json.dumps(document))

        with self.db.get_session() as session:
            active = session.query(AnalyzerConfig)\
                .filter(AnalyzerConfig.slot == 1)\
                .with_for_update()\
                .one_or_none()

            if active is None:
                action = 'initial'
                version = INITIAL_VERSION
                previous = None
                recorded_base = None
            else:
                if action == 'initial':
                    action = 'update'
                if (action in OPTIMISTIC_ACTIONS and based_on_version is not None
                        and based_on_version != active.version):
                    raise VersionConflict(based_on_version, active.version)

                previous = copy.deepcopy(active.config_json)
                if action == 'update' and enforce_step_bounds:
                    delta = validate_delta(previous, document)
                    if not delta.valid:
                        raise ValidationError(
                            f"Config step bounds exceeded: {'; '.join(delta.issues)}", delta.issues
                        )
                version = next_version(active.version)
                recorded_base = based_on_version if action == 'rollback' else active.version

            now = utc_now()
            session.add(AnalyzerConfigHistory(
                version=version,
                config_json=document,
                previous_config_json=previous,
                diff_summary=compute_diff(previous, document),
                based_on_version=recorded_base,
                action=action,
                created_by=author,
                notes=notes,
                validation_status=result.status,
                created_at=now,
            ))

            if active is None:
                session.add(AnalyzerConfig(
                    slot=1,
                    version=version,
                    config_json=document,
                    validation_status=result.status,
                    created_by=author,
                    notes=notes,
                    created_at=now,
                ))
            else:
                active.version = version
                active.config_json = document
                active.validation_status = result.status
                active.created_by = author
                active.notes = notes
                active.created_at = now

            try:
                session.flush()
            except IntegrityError as e:
                raise VersionConflict(
                    recorded_base, version,
                    f"Concurrent proposal already minted version {version}; retry against the new active config"
                ) from e

        logger.info(f"Config {action}: version {version} activated by {author}")
        return version

    def rollback(self, version: str, author: str, notes: str = None) -> str:
        """
        Re-activate a historical document as a new version.

        Raises:
            NotFoundError: if the version is not in history
        """
        target = self.get_version(version)
        return self.propose(
            target.document,
            author=author,
            notes=notes or f"Rollback to version {version}",
            based_on_version=version,
            action='rollback',
        )

    def import_document(self, document: dict, author: str, notes: str,
                        based_on_version: str = None) -> str:
        """Activate an externally generated (e.g. model-suggested) document"""
        return self.propose(document, author, notes, based_on_version=based_on_version,
                            action='ai_import', enforce_step_bounds=False)

    def seed_default(self, author: str = 'system') -> str:
        """Seed the default configuration if the store is empty"""
        try:
            return self.get_active().version
        except NotFoundError:
            pass
        return self.propose(DEFAULT_CONFIG, author, 'Initial default configuration', action='initial')

    def get_version(self, version: str) -> ConfigVersion:
        with self.db.get_session() as session:
            row = session.query(AnalyzerConfigHistory)\
                .filter(AnalyzerConfigHistory.version == version)\
                .one_or_none()
            if row is None:
                raise NotFoundError(f"Config version {version} not found in history")
            return self._to_version(row)

    def history(self, limit: int = 20) -> List[ConfigVersion]:
        """Most recent history entries first"""
        with self.db.get_session() as session:
            rows = session.query(AnalyzerConfigHistory)\
                .order_by(AnalyzerConfigHistory.id.desc())\
                .limit(limit).all()
            return [self._to_version(row) for row in rows]

    @staticmethod
    def _to_version(row: AnalyzerConfigHistory) -> ConfigVersion:
        return ConfigVersion(
            version=row.version,
            action=row.action,
            document=copy.deepcopy(row.config_json),
            previous_document=copy.deepcopy(row.previous_config_json),
            diff_summary=row.diff_summary,
            based_on_version=row.based_on_version,
            created_by=row.created_by,
            notes=row.notes,
            created_at=row.created_at,
        )
