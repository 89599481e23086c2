"""
Location index service.

Bounding-box, radius, and free-text queries over the `locations` collection,
plus the admin-only writes that maintain it.

There is no geo or text index behind this: every query is a bounded full scan
followed by in-memory filtering. That is fine for a campus catalog (hundreds to
low thousands of records). A collection that outgrows `storage.max_scan_size`
makes queries fail loudly with `ScanLimitExceeded` rather than silently answer
from a truncated scan; at that point a real index is needed.

Names are unique case-insensitively. Uniqueness is enforced with a name-key
document per lowercased name (`location_names/<key>`) claimed through the
store's create-if-absent primitive before the location itself is written.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

import pydantic

from campusmap.config.settings import Settings
from campusmap.core.errors import Conflict, NotFound, ScanLimitExceeded, ValidationError
from campusmap.core.geo import GeoPoint
from campusmap.core.region import BoundingBox, bounding_box_around, filter_in_box, filter_within_radius
from campusmap.core.time import utc_now
from campusmap.domain.models import (
    Coordinates,
    LocationFields,
    LocationFilters,
    LocationPatch,
    LocationRecord,
    NearbyLocation,
    UserRole,
    to_document,
)
from campusmap.services._common import validate_input
from campusmap.services.authz import require_role
from campusmap.services.gateways import GuardedStore
from campusmap.storage.base import Document, DocumentExists, VersionConflict

logger = logging.getLogger(__name__)

LOCATIONS_COLLECTION = "locations"
NAMES_COLLECTION = "location_names"

# A name key whose location never appeared is reclaimable after this long.
_STALE_RESERVATION = timedelta(minutes=1)


def _name_key(name: str) -> str:
    return " ".join(name.casefold().split())


def _latlng(record: LocationRecord) -> tuple[float, float]:
    return record.coordinates.lat, record.coordinates.lng


def _matches_filters(record: LocationRecord, filters: LocationFilters) -> bool:
    if filters.type is not None and record.type != filters.type:
        return False
    if filters.building_id is not None and record.building_id != filters.building_id:
        return False
    if filters.floor is not None and record.floor != filters.floor:
        return False
    if filters.tags and not set(filters.tags) & set(record.tags):
        return False
    return True


def _matches_text(record: LocationRecord, term: str) -> bool:
    if term in record.name.casefold():
        return True
    if term in (record.description or "").casefold():
        return True
    return any(term in tag for tag in record.tags)


class LocationIndexService:
    def __init__(self, store: GuardedStore, settings: Settings):
        self._store = store
        self._settings = settings

    # -- reads -----------------------------------------------------------------

    def _to_record(self, doc: Document) -> LocationRecord:
        return LocationRecord.model_validate({**doc.data, "id": doc.id})

    def _scan(self) -> list[LocationRecord]:
        """Load the whole collection, refusing to go past the configured cap."""
        cap = int(self._settings.storage.max_scan_size)
        docs = self._store.scan(LOCATIONS_COLLECTION, limit=cap + 1)
        if len(docs) > cap:
            raise ScanLimitExceeded(
                f"locations collection exceeds max_scan_size={cap}; a real spatial/text index is required"
            )

        out: list[LocationRecord] = []
        for doc in docs:
            try:
                out.append(self._to_record(doc))
            except pydantic.ValidationError as exc:
                logger.warning("Skipping malformed location %s: %s", doc.id, exc.error_count())
        return out

    def get_location(self, location_id: str) -> LocationRecord:
        doc = self._store.get(LOCATIONS_COLLECTION, location_id)
        if doc is None:
            raise NotFound(f"Location {location_id} not found")
        return self._to_record(doc)

    def query_bounding_box(self, north: float, south: float, east: float, west: float) -> list[LocationRecord]:
        """Locations with `south <= lat <= north` and `west <= lng <= east`, in store order."""
        box = BoundingBox(north=float(north), south=float(south), east=float(east), west=float(west))
        return filter_in_box(self._scan(), box, get_latlng=_latlng)

    def query_nearby(self, center: Coordinates | GeoPoint, radius_m: float) -> list[NearbyLocation]:
        """Locations within `radius_m` of `center` (exact Haversine), nearest first."""
        origin = GeoPoint(lat=float(center.lat), lng=float(center.lng))
        if not (-90 <= origin.lat <= 90 and -180 <= origin.lng <= 180):
            raise ValidationError(f"Invalid center ({origin.lat}, {origin.lng})")

        box = bounding_box_around(origin, radius_m)
        candidates = self.query_bounding_box(box.north, box.south, box.east, box.west)
        # The box is wider than the circle; the exact check drops its corners.
        hits = filter_within_radius(candidates, origin, radius_m, get_latlng=_latlng)
        return [NearbyLocation(location=rec, distance_m=d) for rec, d in hits]

    def search_text(self, query: str | None, filters: LocationFilters | dict | None = None) -> list[LocationRecord]:
        """Case-insensitive substring search over name, description and tags.

        O(n) over the scanned collection. An empty query is a plain (filtered) listing.
        """
        filters = validate_input(LocationFilters, filters or {})
        term = (query or "").strip().casefold()
        if not term:
            return self.list_locations(filters)

        limit = self._effective_limit(filters.limit)
        hits = [r for r in self._scan() if _matches_filters(r, filters) and _matches_text(r, term)]
        hits.sort(key=lambda r: r.name.casefold())
        return hits[:limit]

    def list_locations(self, filters: LocationFilters | dict | None = None) -> list[LocationRecord]:
        """Filtered listing ordered by name."""
        filters = validate_input(LocationFilters, filters or {})
        records = [r for r in self._scan() if _matches_filters(r, filters)]
        records.sort(key=lambda r: r.name.casefold())
        if filters.limit is not None:
            records = records[: self._effective_limit(filters.limit)]
        return records

    def _effective_limit(self, limit: int | None) -> int:
        cfg = self._settings.locations
        if limit is None:
            return int(cfg.default_search_limit)
        return max(1, min(int(limit), int(cfg.max_search_limit)))

    # -- name keys ---------------------------------------------------------------

    def _reserve_name(self, name: str, location_id: str) -> None:
        key = _name_key(name)
        claim = {"location_id": location_id, "name": name, "reserved_at": utc_now().isoformat()}
        try:
            self._store.create(NAMES_COLLECTION, key, claim)
            return
        except DocumentExists:
            pass

        existing = self._store.get(NAMES_COLLECTION, key)
        if existing is None:
            # Released between our create and get; one more plain attempt.
            try:
                self._store.create(NAMES_COLLECTION, key, claim)
                return
            except DocumentExists as exc:
                raise Conflict(f"A location named '{name}' already exists") from exc

        owner = existing.data.get("location_id")
        if owner == location_id:
            return
        owner_doc = self._store.get(LOCATIONS_COLLECTION, owner) if owner else None
        if owner_doc is not None and _name_key(str(owner_doc.data.get("name", ""))) == key:
            raise Conflict(f"A location named '{name}' already exists")

        if not self._is_stale(existing.data.get("reserved_at")):
            raise Conflict(f"A location named '{name}' is being created")
        try:
            self._store.put_if_version(NAMES_COLLECTION, key, claim, expected_version=existing.version)
            logger.info("Reclaimed stale name key %r from %s", key, owner)
        except VersionConflict as exc:
            raise Conflict(f"A location named '{name}' already exists") from exc

    @staticmethod
    def _is_stale(reserved_at: str | None) -> bool:
        if not reserved_at:
            return True
        try:
            ts = pydantic.TypeAdapter(pydantic.AwareDatetime).validate_python(reserved_at)
        except pydantic.ValidationError:
            return True
        return utc_now() - ts > _STALE_RESERVATION

    def _release_name(self, name: str, location_id: str) -> None:
        key = _name_key(name)
        existing = self._store.get(NAMES_COLLECTION, key)
        if existing is None or existing.data.get("location_id") != location_id:
            return
        try:
            self._store.delete(NAMES_COLLECTION, key, expected_version=existing.version)
        except VersionConflict:
            logger.info("Name key %r changed hands before release; leaving it", key)

    def _check_building(self, building_id: str | None, *, self_id: str | None = None) -> None:
        if building_id is None:
            return
        if building_id == self_id:
            raise ValidationError("building_id cannot reference the location itself")
        if self._store.get(LOCATIONS_COLLECTION, building_id) is None:
            raise NotFound(f"Building {building_id} not found")

    # -- writes (admin only) -----------------------------------------------------

    def create_location(self, data: LocationFields | dict, caller_uid: str | None) -> LocationRecord:
        fields = validate_input(LocationFields, data)
        require_role(self._store, caller_uid, UserRole.ADMIN)
        self._check_building(fields.building_id)

        location_id = uuid.uuid4().hex
        now = utc_now()
        doc = {**to_document(fields), "created_at": now.isoformat(), "updated_at": now.isoformat()}

        self._reserve_name(fields.name, location_id)
        try:
            created = self._store.create(LOCATIONS_COLLECTION, location_id, doc)
        except Exception:
            self._release_name(fields.name, location_id)
            raise

        logger.info("Location created id=%s name=%r", location_id, fields.name)
        return self._to_record(created)

    def update_location(self, location_id: str, patch: LocationPatch | dict, caller_uid: str | None) -> LocationRecord:
        patch = validate_input(LocationPatch, patch)
        require_role(self._store, caller_uid, UserRole.ADMIN)

        current_doc = self._store.get(LOCATIONS_COLLECTION, location_id)
        if current_doc is None:
            raise NotFound(f"Location {location_id} not found")
        current = self._to_record(current_doc)

        changes = patch.model_dump(mode="json", exclude_unset=True)
        if "name" in changes and changes["name"] is None:
            raise ValidationError("name cannot be cleared")
        if "type" in changes and changes["type"] is None:
            raise ValidationError("type cannot be cleared")
        if "coordinates" in changes and changes["coordinates"] is None:
            raise ValidationError("coordinates cannot be cleared")
        merged = {**current_doc.data, **changes, "updated_at": utc_now().isoformat()}
        # Re-validate the merged record (e.g. blank names after stripping).
        fields = validate_input(LocationFields, {k: merged.get(k) for k in LocationFields.model_fields})
        if "building_id" in changes:
            self._check_building(fields.building_id, self_id=location_id)

        renamed = _name_key(fields.name) != _name_key(current.name)
        if renamed:
            self._reserve_name(fields.name, location_id)
        try:
            updated = self._store.put_if_version(
                LOCATIONS_COLLECTION,
                location_id,
                {**merged, **to_document(fields)},
                expected_version=current_doc.version,
            )
        except VersionConflict as exc:
            if renamed:
                self._release_name(fields.name, location_id)
            raise Conflict(f"Location {location_id} was modified concurrently; retry") from exc
        except Exception:
            if renamed:
                self._release_name(fields.name, location_id)
            raise

        if renamed:
            self._release_name(current.name, location_id)
        logger.info("Location updated id=%s", location_id)
        return self._to_record(updated)

    def delete_location(self, location_id: str, caller_uid: str | None) -> None:
        require_role(self._store, caller_uid, UserRole.ADMIN)
        doc = self._store.get(LOCATIONS_COLLECTION, location_id)
        if doc is None:
            raise NotFound(f"Location {location_id} not found")
        record = self._to_record(doc)
        self._store.delete(LOCATIONS_COLLECTION, location_id)
        self._release_name(record.name, location_id)
        logger.info("Location deleted id=%s", location_id)
