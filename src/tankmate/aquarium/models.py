"""Read-only aquarium snapshot consumed by the chat engine."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..chat.message_model import ITEM_TYPE_EQUIPMENT, ITEM_TYPE_FISH, ITEM_TYPE_PLANT, normalize_name

__all__ = ["Aquarium", "Equipment", "Fish", "Plant", "WaterParameters"]


@dataclass(slots=True)
class Fish:
    """A species stocked in the tank."""

    name: str
    count: int = 1
    role: str = ""
    type: str = ""
    description: Optional[str] = None
    care_level: Optional[str] = None
    min_tank_size: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Fish":
        return cls(
            name=str(payload.get("name", "")),
            count=_coerce_int(payload.get("count"), 1),
            role=str(payload.get("role", "") or ""),
            type=str(payload.get("type", "") or ""),
            description=payload.get("description"),
            care_level=payload.get("careLevel", payload.get("care_level")),
            min_tank_size=payload.get("minTankSize", payload.get("min_tank_size")),
        )


@dataclass(slots=True)
class Plant:
    name: str
    count: int = 1
    role: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Plant":
        return cls(
            name=str(payload.get("name", "")),
            count=_coerce_int(payload.get("count"), 1),
            role=str(payload.get("role", "") or ""),
        )


@dataclass(slots=True)
class Equipment:
    name: str
    description: str = ""
    role: str = ""
    type: str = "other"
    fields: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Equipment":
        raw_fields = payload.get("fields")
        return cls(
            name=str(payload.get("name", "")),
            description=str(payload.get("description", "") or ""),
            role=str(payload.get("role", "") or ""),
            type=str(payload.get("type", "other") or "other"),
            fields={str(k): str(v) for k, v in raw_fields.items()} if isinstance(raw_fields, Mapping) else {},
        )


@dataclass(slots=True)
class WaterParameters:
    """Latest logged water chemistry readings."""

    temperature: Optional[float] = None
    ph: Optional[float] = None
    ammonia: Optional[float] = None
    nitrite: Optional[float] = None
    nitrate: Optional[float] = None
    gh: Optional[float] = None
    kh: Optional[float] = None
    co2: Optional[float] = None
    salinity: Optional[float] = None
    calcium: Optional[float] = None
    magnesium: Optional[float] = None
    alkalinity: Optional[float] = None
    phosphate: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WaterParameters":
        allowed = {item.name for item in fields(cls)}
        values: Dict[str, Optional[float]] = {}
        for key, value in payload.items():
            if key not in allowed or value is None:
                continue
            try:
                values[key] = float(value)
            except (TypeError, ValueError):
                continue
        return cls(**values)

    def readings(self) -> Dict[str, float]:
        """Return only the parameters that have a value."""

        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }


@dataclass(slots=True)
class Aquarium:
    """Snapshot of one aquarium and its inventory."""

    name: str
    id: str = ""
    type: str = "Freshwater"
    size: str = ""
    species: List[Fish] = field(default_factory=list)
    plants: List[Plant] = field(default_factory=list)
    equipment: List[Equipment] = field(default_factory=list)
    parameters: Optional[WaterParameters] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Aquarium":
        parameters = payload.get("parameters")
        return cls(
            id=str(payload.get("id", "") or ""),
            name=str(payload.get("name", "") or ""),
            type=str(payload.get("type", "Freshwater") or "Freshwater"),
            size=str(payload.get("size", "") or ""),
            species=[Fish.from_dict(item) for item in _mappings(payload.get("species"))],
            plants=[Plant.from_dict(item) for item in _mappings(payload.get("plants"))],
            equipment=[Equipment.from_dict(item) for item in _mappings(payload.get("equipment"))],
            parameters=WaterParameters.from_dict(parameters) if isinstance(parameters, Mapping) else None,
        )

    def inventory_names(self) -> set[str]:
        """Case-folded names of every fish, plant and piece of equipment."""

        names: set[str] = set()
        for group in (self.species, self.plants, self.equipment):
            names.update(normalize_name(entry.name) for entry in group if entry.name)
        return names

    def add_item(self, item_type: str, item_name: str) -> bool:
        """Append a new inventory entry; returns ``False`` for unknown types."""

        if item_type == ITEM_TYPE_FISH:
            self.species.append(Fish(name=item_name))
        elif item_type == ITEM_TYPE_PLANT:
            self.plants.append(Plant(name=item_name))
        elif item_type == ITEM_TYPE_EQUIPMENT:
            self.equipment.append(Equipment(name=item_name))
        else:
            return False
        return True


def _mappings(value: Any) -> Iterable[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, Mapping)]


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
