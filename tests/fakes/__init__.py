"""In-memory test doubles for the pipeline's external collaborators."""
from .fake_builder import FakeBuilder
from .fake_catalog import FakeCatalog
from .fake_identity import FakeIdentity, make_credential
from .fake_registry import FakeRegistry

__all__ = ["FakeBuilder", "FakeCatalog", "FakeIdentity", "FakeRegistry", "make_credential"]
