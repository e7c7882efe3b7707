from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from fulfillment.core.errors import NotFoundError, ValidationError
from fulfillment.core.locations.models import Location, LocationSummary, RequestType
from fulfillment.core.scope import Scope
from fulfillment.core.store import SqliteRecordStore


VERIFICATION_MAX_AGE_SECONDS = 30 * 24 * 3600

# fan-out reads the registry in pages of this size
_PAGE = 500


class LocationRegistry:
    def __init__(self, *, store: SqliteRecordStore, logger: Any = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.logger = logger
        self.clock = clock

    def list_active_for_request_type(self, scope: Scope, request_type: RequestType) -> List[Location]:
        """
        Active locations supporting `request_type`, lowest priority_order first.
        """
        rt = RequestType(request_type)
        out: List[Location] = []
        offset = 0
        while True:
            page, total = self.store.query_locations(
                scope,
                supported_request_type=rt,
                is_active=True,
                order_by="priority_order",
                order_direction="asc",
                limit=_PAGE,
                offset=offset,
            )
            out.extend(page)
            offset += len(page)
            if not page or offset >= total:
                break
        return out

    def register(self, scope: Scope, location: Location) -> Location:
        if not location.supported_request_types:
            raise ValidationError("A location must support at least one request type.", name=location.name)
        loc = self.store.create_location(scope, location)
        if self.logger:
            self.logger.info(f"[locations] registered {loc.name} ({loc.execution_type.value}) id={loc.id}")
        return loc

    def get(self, scope: Scope, location_id: str) -> Location:
        loc = self.store.get_location(scope, location_id)
        if loc is None:
            raise NotFoundError("Location", location_id)
        return loc

    def update(self, scope: Scope, location_id: str, fields: Dict[str, Any]) -> Location:
        if "supported_request_types" in fields and not fields["supported_request_types"]:
            raise ValidationError("A location must support at least one request type.", location_id=location_id)
        loc = self.store.update_location(scope, location_id, fields)
        if self.logger:
            self.logger.info(f"[locations] updated {loc.name} fields={sorted(fields)}")
        return loc

    def deactivate(self, scope: Scope, location_id: str) -> Location:
        loc = self.store.deactivate_location(scope, location_id)
        if self.logger:
            self.logger.info(f"[locations] deactivated {loc.name}")
        return loc

    def mark_verified(self, scope: Scope, location_id: str) -> Location:
        return self.store.mark_location_verified(scope, location_id, at=self.clock())

    def summary(self, scope: Scope) -> LocationSummary:
        now = self.clock()
        s = LocationSummary()
        for is_active, system_type, execution_type, last_verified_at in self.store.location_stats_rows(scope):
            s.total += 1
            s.by_system_type[system_type.value] = s.by_system_type.get(system_type.value, 0) + 1
            s.by_execution_type[execution_type.value] = s.by_execution_type.get(execution_type.value, 0) + 1
            if not is_active:
                continue
            s.active += 1
            if last_verified_at is None or (now - float(last_verified_at)) > VERIFICATION_MAX_AGE_SECONDS:
                s.needs_verification += 1
        return s

    def find(self, scope: Scope, location_id: str) -> Optional[Location]:
        return self.store.get_location(scope, location_id)
