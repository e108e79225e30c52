"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan state change (creation, receipts, reversals, status and scheme
changes) is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_CLOSED = "loan_closed"
    SCHEME_CHANGED = "scheme_changed"
    RECEIPT_COMMITTED = "receipt_committed"
    RECEIPT_CANCELLED = "receipt_cancelled"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # loan, receipt
    entity_id: str
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self._serialize_metadata()

    def _serialize_metadata(self) -> None:
        """Convert metadata values to JSON-serializable format"""
        def convert_value(value):
            if isinstance(value, Decimal):
                return str(value)
            elif isinstance(value, (datetime, date)):
                return value.isoformat()
            elif isinstance(value, Enum):
                return value.value
            elif isinstance(value, dict):
                return {k: convert_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [convert_value(v) for v in value]
            else:
                return value

        self.metadata = {k: convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self._sorted_event_dicts()
        self._sequence = len(events)
        if events:
            self._last_hash = events[-1].get('current_hash')

    def _sorted_event_dicts(self) -> List[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        return sorted(events, key=lambda x: (x.get('sequence', 0), x.get('created_at', '')))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self._sequence += 1
            record = event.to_dict()
            record['sequence'] = self._sequence
            self.storage.save(self.table_name, event.id, record)

            self._last_hash = event.current_hash
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for an entity in chain order"""
        events = [
            data for data in self._sorted_event_dicts()
            if data['entity_type'] == entity_type and data['entity_id'] == entity_id
        ]
        return [AuditEvent.from_dict(self._strip_sequence(data)) for data in events]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Re-check every hash and every chain link.

        Returns:
            {"valid": bool, "total_events": int, "errors": [...]}
        """
        errors = []
        previous_hash = ""
        events = self._sorted_event_dicts()

        for data in events:
            event = AuditEvent.from_dict(self._strip_sequence(data))
            if not event.verify_hash():
                errors.append({"event_id": event.id, "error": "hash mismatch"})
            if event.previous_hash != previous_hash:
                errors.append({"event_id": event.id, "error": "broken chain"})
            previous_hash = event.current_hash

        return {"valid": not errors, "total_events": len(events), "errors": errors}

    @staticmethod
    def _strip_sequence(data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        data.pop('sequence', None)
        return data
