"""
GeoSolver - Entity Store
========================

Arena of geometric entities addressed by generation-checked handles.

The store owns all mutable geometric state. The solver never keeps
references into it: it takes a ``snapshot()`` at the start of a solve and
writes results back through ``commit()``, one atomic batch per cluster.

Usage:
    store = EntityStore()
    p1 = store.add_point2d(0, 0, fixed=True)
    p2 = store.add_point2d(40, 10)
    store.move_entity(p2, [45, 5])
"""

from dataclasses import dataclass, field, replace
import heapq
import threading
import uuid
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from loguru import logger

from .geometry import EntityType, anchor, layout, validate_params


class StaleHandleError(KeyError):
    """Handle refers to a removed entity or a slot that has since been reused."""


class EntityFixedError(ValueError):
    """Edit or drag attempted on a fixed entity."""


@dataclass(frozen=True, order=True)
class EntityHandle:
    """Arena index plus the slot generation it was issued for."""
    index: int
    generation: int

    def __repr__(self) -> str:
        return f"EntityHandle({self.index}:{self.generation})"


@dataclass
class Entity:
    """A geometric primitive with its parameter vector."""
    handle: EntityHandle
    id: str
    type: EntityType
    params: np.ndarray
    fixed: bool = False
    sequence: int = 0
    revision: int = 0  # store revision of the last write to this entity

    @property
    def dim(self) -> int:
        return layout(self.type).dim

    @property
    def anchor(self) -> np.ndarray:
        return anchor(self.type, self.params).copy()

    def copy(self) -> "Entity":
        return replace(self, params=self.params.copy())

    def __repr__(self) -> str:
        state = " fixed" if self.fixed else ""
        return f"Entity({self.id}, {self.type.value}, {self.params.tolist()}{state})"


@dataclass
class _Slot:
    generation: int = 0
    entity: Optional[Entity] = None


@dataclass
class StoreSnapshot:
    """Read-only copy of the store taken under its lock."""
    revision: int
    entities: Dict[EntityHandle, Entity] = field(default_factory=dict)

    def values(self) -> Dict[EntityHandle, np.ndarray]:
        return {h: e.params.copy() for h, e in self.entities.items()}

    def types(self) -> Dict[EntityHandle, EntityType]:
        return {h: e.type for h, e in self.entities.items()}

    def is_fixed(self, handle: EntityHandle) -> bool:
        return self.entities[handle].fixed

    def sequence(self, handle: EntityHandle) -> int:
        return self.entities[handle].sequence

    def ordered(self) -> List[EntityHandle]:
        """Handles in entity creation order."""
        return sorted(self.entities, key=lambda h: self.entities[h].sequence)

    def __contains__(self, handle: EntityHandle) -> bool:
        return handle in self.entities


class EntityStore:
    """
    Flat arena of entities.

    Slots freed by ``remove_entity`` are reused with an incremented
    generation, so a handle kept across a removal raises StaleHandleError
    instead of silently aliasing the new occupant.
    """

    def __init__(self):
        self._slots: List[_Slot] = []
        self._free: List[int] = []
        self._ids: Dict[str, EntityHandle] = {}
        self._sequence = 0
        self._revision = 0
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def add_entity(self, etype: EntityType, params: Sequence[float], fixed: bool = False,
                   id: Optional[str] = None) -> EntityHandle:
        values = validate_params(etype, params)
        with self._lock:
            entity_id = id or str(uuid.uuid4())[:8]
            if entity_id in self._ids:
                raise ValueError(f"Entity id already in use: {entity_id}")
            if self._free:
                index = heapq.heappop(self._free)
                slot = self._slots[index]
            else:
                index = len(self._slots)
                slot = _Slot()
                self._slots.append(slot)
            handle = EntityHandle(index, slot.generation)
            self._revision += 1
            slot.entity = Entity(handle, entity_id, etype, values, fixed, self._sequence, self._revision)
            self._sequence += 1
            self._ids[entity_id] = handle
        logger.debug(f"[Store] Added {etype.value} {entity_id} at {handle}{' (fixed)' if fixed else ''}")
        return handle

    def add_point2d(self, x: float, y: float, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.POINT2D, (x, y), fixed, id)

    def add_point3d(self, x: float, y: float, z: float, fixed: bool = False,
                    id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.POINT3D, (x, y, z), fixed, id)

    def add_line2d(self, origin, direction, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.LINE2D, (*origin, *direction), fixed, id)

    def add_circle2d(self, center, radius: float, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.CIRCLE2D, (*center, radius), fixed, id)

    def add_arc2d(self, center, radius: float, start_angle: float, end_angle: float, fixed: bool = False,
                  id: Optional[str] = None) -> EntityHandle:
        """Adds an arc; angles in radians."""
        return self.add_entity(EntityType.ARC2D, (*center, radius, start_angle, end_angle), fixed, id)

    def add_axis3d(self, origin, direction, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.AXIS3D, (*origin, *direction), fixed, id)

    def add_plane3d(self, origin, normal, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.PLANE3D, (*origin, *normal), fixed, id)

    def add_frame3d(self, origin, axis=(0.0, 0.0, 1.0), reference=(1.0, 0.0, 0.0), fixed: bool = False,
                    id: Optional[str] = None) -> EntityHandle:
        """Adds a rigid body frame: origin, joint axis (z) and reference direction (x)."""
        return self.add_entity(EntityType.FRAME3D, (*origin, *axis, *reference), fixed, id)

    def add_scalar(self, value: float, fixed: bool = False, id: Optional[str] = None) -> EntityHandle:
        return self.add_entity(EntityType.SCALAR, (value,), fixed, id)

    # -------------------------------------------------------------------------
    # Named edits
    # -------------------------------------------------------------------------

    def move_entity(self, handle: EntityHandle, params: Sequence[float]) -> None:
        """Replaces the parameters of an unfixed entity."""
        with self._lock:
            entity = self._resolve(handle)
            if entity.fixed:
                raise EntityFixedError(f"Entity {entity.id} is fixed")
            entity.params = validate_params(entity.type, params)
            self._revision += 1
            entity.revision = self._revision

    def set_fixed(self, handle: EntityHandle, fixed: bool) -> None:
        with self._lock:
            entity = self._resolve(handle)
            entity.fixed = bool(fixed)
            self._revision += 1
            entity.revision = self._revision

    def remove_entity(self, handle: EntityHandle) -> None:
        """Frees the slot. Constraints referencing the entity become stale."""
        with self._lock:
            entity = self._resolve(handle)
            slot = self._slots[handle.index]
            slot.entity = None
            slot.generation += 1
            heapq.heappush(self._free, handle.index)
            del self._ids[entity.id]
            self._revision += 1
        logger.debug(f"[Store] Removed {entity.id} ({handle})")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, handle: EntityHandle) -> bool:
        return self.is_valid(handle)

    def is_valid(self, handle: EntityHandle) -> bool:
        if not isinstance(handle, EntityHandle) or not (0 <= handle.index < len(self._slots)):
            return False
        slot = self._slots[handle.index]
        return slot.entity is not None and slot.generation == handle.generation

    def entity(self, handle: EntityHandle) -> Entity:
        with self._lock:
            return self._resolve(handle).copy()

    def params(self, handle: EntityHandle) -> np.ndarray:
        with self._lock:
            return self._resolve(handle).params.copy()

    def type_of(self, handle: EntityHandle) -> EntityType:
        return self._resolve(handle).type

    def is_fixed(self, handle: EntityHandle) -> bool:
        return self._resolve(handle).fixed

    def handle_for(self, entity_id: str) -> EntityHandle:
        try:
            return self._ids[entity_id]
        except KeyError:
            raise StaleHandleError(f"Unknown entity id: {entity_id}") from None

    def handles(self) -> List[EntityHandle]:
        """Live handles in creation order."""
        with self._lock:
            live = [s.entity for s in self._slots if s.entity is not None]
        return [e.handle for e in sorted(live, key=lambda e: e.sequence)]

    def _resolve(self, handle: EntityHandle) -> Entity:
        if not self.is_valid(handle):
            raise StaleHandleError(f"Stale or unknown entity handle: {handle!r}")
        return self._slots[handle.index].entity

    # -------------------------------------------------------------------------
    # Solver borrowing
    # -------------------------------------------------------------------------

    def snapshot(self, handles: Optional[Iterable[EntityHandle]] = None) -> StoreSnapshot:
        """Copies all (or the given) entities under the store lock."""
        with self._lock:
            if handles is None:
                selected = [s.entity for s in self._slots if s.entity is not None]
            else:
                selected = [self._resolve(h) for h in handles]
            return StoreSnapshot(self._revision, {e.handle: e.copy() for e in selected})

    def commit(self, batch: Mapping[EntityHandle, np.ndarray], base_revision: Optional[int] = None) -> Optional[int]:
        """
        Writes a batch of parameter vectors atomically.

        The whole batch is validated before anything is written, so a reader
        holding the lock never observes a partially applied cluster.

        Args:
            batch: new parameters per entity
            base_revision: store revision the batch was computed from. If any
                entity in the batch was written after it (moved, fixed or
                committed), the whole batch is dropped.

        Returns:
            The new store revision, or None when the batch was dropped as stale.
        """
        if not batch:
            return self._revision
        with self._lock:
            entities = [(self._resolve(handle), params) for handle, params in batch.items()]
            if base_revision is not None:
                stale = [e.id for e, _ in entities if e.revision > base_revision]
                if stale:
                    logger.warning(f"[Store] Dropped batch computed at revision {base_revision}: "
                                   f"{', '.join(stale)} changed since")
                    return None
            staged = []
            for entity, params in entities:
                if entity.fixed:
                    raise EntityFixedError(f"Cannot write fixed entity {entity.id}")
                staged.append((entity, validate_params(entity.type, params)))
            self._revision += 1
            for entity, values in staged:
                entity.params = values
                entity.revision = self._revision
            return self._revision

    def copy(self) -> "EntityStore":
        """Independent deep copy, e.g. for what-if solves."""
        clone = EntityStore()
        with self._lock:
            clone._slots = [_Slot(s.generation, s.entity.copy() if s.entity else None) for s in self._slots]
            clone._free = list(self._free)
            clone._ids = dict(self._ids)
            clone._sequence = self._sequence
            clone._revision = self._revision
        return clone
