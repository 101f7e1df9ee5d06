from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


UNKNOWN_LABEL = "Unknown"


@dataclass(frozen=True)
class ClassificationTable:
    """
    Ordered value -> label lookup for one discrete raster (e.g. land cover).

    `classify` is total over integers: values outside the table get `default`.
    A missing sample (None) stays None so "nothing sampled" is distinguishable
    from "sampled an unmapped value".
    """

    name: str
    entries: tuple[tuple[int, str], ...]
    default: str = UNKNOWN_LABEL
    _lookup: dict[int, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        lookup: dict[int, str] = {}
        for value, label in self.entries:
            key = int(value)
            if key in lookup:
                raise ValueError(f"Classification table '{self.name}' repeats value {key}")
            lookup[key] = str(label)
        object.__setattr__(self, "_lookup", lookup)

    @classmethod
    def from_mapping(
        cls, name: str, mapping: Mapping[Any, str], *, default: str = UNKNOWN_LABEL
    ) -> "ClassificationTable":
        entries = tuple(sorted(((int(k), str(v)) for k, v in mapping.items()), key=lambda e: e[0]))
        return cls(name=name, entries=entries, default=default)

    def labels(self) -> list[str]:
        return [label for _, label in self.entries]

    def is_mapped(self, value: Any) -> bool:
        key = _as_int(value)
        return key is not None and key in self._lookup

    def classify(self, value: Any) -> str | None:
        if value is None:
            return None
        key = _as_int(value)
        if key is None:
            return self.default
        return self._lookup.get(key, self.default)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        key = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # 21.5 is not class 21.
    if key != value:
        return None
    return key


# National Land Cover Database (NLCD) classes.
NLCD_LAND_COVER = ClassificationTable.from_mapping(
    "nlcd_land_cover",
    {
        11: "Open Water",
        12: "Perennial Ice/Snow",
        21: "Developed, Open Space",
        22: "Developed, Low Intensity",
        23: "Developed, Medium Intensity",
        24: "Developed, High Intensity",
        31: "Barren Land",
        41: "Deciduous Forest",
        42: "Evergreen Forest",
        43: "Mixed Forest",
        52: "Shrub/Scrub",
        71: "Grassland/Herbaceous",
        81: "Pasture/Hay",
        82: "Cultivated Crops",
        90: "Woody Wetlands",
        95: "Emergent Herbaceous Wetlands",
    },
)

BUILTIN_TABLES: dict[str, ClassificationTable] = {NLCD_LAND_COVER.name: NLCD_LAND_COVER}
