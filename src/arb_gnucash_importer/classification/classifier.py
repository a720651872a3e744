"""Address classification from user-supplied label and category files."""

from pathlib import Path
from typing import Any, Iterable, Optional
import logging

from ..models.ledger import UNCLASSIFIED, Classification
from ..models.report import MappingOverrideNotice
from ..utils.addresses import normalize_address
from .loaders import load_mapping_file

logger = logging.getLogger(__name__)


class AddressClassifier:
    """
    Resolves addresses to an optional label and category.

    Lookups are case-insensitive. Unknown addresses resolve to an empty
    Classification. When several files define the same address the file
    loaded last wins and a MappingOverrideNotice is recorded.
    """

    def __init__(self) -> None:
        self._labels: dict[str, str] = {}
        self._categories: dict[str, str] = {}
        self._sources: dict[tuple[str, str], str] = {}
        self.overrides: list[MappingOverrideNotice] = []

    @classmethod
    def from_files(
        cls,
        label_files: Iterable[Path] = (),
        category_files: Iterable[Path] = (),
    ) -> "AddressClassifier":
        """
        Build a classifier from mapping files, loaded in the given order.

        Label files are loaded before category files. Plain string values
        in a label file are labels; in a category file they are categories.
        """
        classifier = cls()
        for path in label_files:
            classifier.load_file(Path(path), default_field="label")
        for path in category_files:
            classifier.load_file(Path(path), default_field="category")
        return classifier

    def load_file(self, path: Path, default_field: str = "label") -> None:
        self.load_mapping(load_mapping_file(path), source=str(path), default_field=default_field)

    def load_mapping(
        self,
        mapping: dict[str, Any],
        source: str = "<memory>",
        default_field: str = "label",
    ) -> None:
        """
        Merge a mapping over the current entries.

        Args:
            mapping: ``{address: str | {"label", "category", "description"}}``
            source: Name of the mapping's origin, used in override notices
            default_field: Field a plain string value is assigned to
        """
        for address, value in mapping.items():
            address = normalize_address(address)
            if isinstance(value, dict):
                label = value.get("label") or value.get("description")
                category = value.get("category")
            elif default_field == "category":
                label, category = None, value
            else:
                label, category = value, None

            if label:
                self._set("label", self._labels, address, label, source)
            if category:
                self._set("category", self._categories, address, category, source)

    def _set(
        self,
        field: str,
        target: dict[str, str],
        address: str,
        value: str,
        source: str,
    ) -> None:
        previous = target.get(address)
        if previous is not None and previous != value:
            notice = MappingOverrideNotice(
                address=address,
                field=field,
                previous_value=previous,
                new_value=value,
                source=source,
            )
            logger.warning(
                f"Override: {notice} (was set by {self._sources.get((field, address))})"
            )
            self.overrides.append(notice)
        target[address] = value
        self._sources[(field, address)] = source

    def classify(self, address: Optional[str]) -> Classification:
        """Look up an address; unknown or empty addresses are unclassified."""
        address = normalize_address(address)
        if address is None:
            return UNCLASSIFIED
        label = self._labels.get(address)
        category = self._categories.get(address)
        if label is None and category is None:
            return UNCLASSIFIED
        return Classification(label=label, category=category)

    def __len__(self) -> int:
        return len(set(self._labels) | set(self._categories))

    def entries(self) -> list[tuple[str, Classification]]:
        """All classified addresses in address order."""
        addresses = sorted(set(self._labels) | set(self._categories))
        return [(address, self.classify(address)) for address in addresses]
