"""Address classification."""

from .classifier import AddressClassifier
from .loaders import load_mapping_file

__all__ = ["AddressClassifier", "load_mapping_file"]
