"""Category catalog and tenant collaborators.

Objective:
    Give the pipeline read access to the data it does not own: category
    definitions, business profiles, provisioned labels and credential
    references.

Responsibilities:
    - Define the collaborator protocols (:class:`CategoryCatalog`,
      :class:`ProfileStore`, :class:`LabelProvisioner`,
      :class:`CredentialStore`).
    - Provide in-memory and JSON-file implementations for local runs and
      tests.
    - Take an immutable per-call snapshot of the categories a composition
      needs (:meth:`CatalogSnapshot.fetch`).

High-level call tree:
    - :meth:`CatalogSnapshot.fetch`
        - :meth:`CategoryCatalog.get_category` (once per category id)
    - :class:`FileTenantDirectory`
        - :meth:`FileTenantDirectory.get_profile`
        - :meth:`FileTenantDirectory.get_label_ids`
        - :meth:`FileTenantDirectory.get_binding`

File formats:
    - Catalog directory: one ``<categoryId>.json`` file per category, holding
      a :class:`CategoryDefinition` document.
    - Tenants file::

        {
          "profiles": [{"profileId": "...", "selectedCategories": [...], ...}],
          "labels": {"<profileId>": {"<intentKey>": "<labelId>"}},
          "credentials": [{"profileId": "...", "providerId": "gmail",
                           "externalCredentialId": "..."}]
        }
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import CategoryNotFoundError, PipelineError, ProfileNotFoundError
from .models import BusinessProfile, CategoryDefinition, CredentialBinding

logger = logging.getLogger(__name__)


class CategoryCatalog(Protocol):
    def get_category(self, category_id: str) -> CategoryDefinition: ...


class ProfileStore(Protocol):
    def get_profile(self, profile_id: str) -> BusinessProfile: ...


class LabelProvisioner(Protocol):
    def get_label_ids(self, profile_id: str) -> dict[str, str]: ...


class CredentialStore(Protocol):
    def get_binding(self, profile_id: str, provider_id: str) -> Optional[CredentialBinding]: ...


class InMemoryCategoryCatalog:
    """Catalog backed by a dict; used by tests and embedding callers."""

    def __init__(self, categories: Iterable[CategoryDefinition] = ()) -> None:
        self._categories = {c.category_id: c for c in categories}

    def add(self, category: CategoryDefinition) -> None:
        self._categories[category.category_id] = category

    def get_category(self, category_id: str) -> CategoryDefinition:
        try:
            return self._categories[category_id]
        except KeyError:
            raise CategoryNotFoundError(category_id) from None


class FileCategoryCatalog:
    """
    Catalog reading one JSON file per category from a directory.

    Files are read on every lookup so catalog edits are picked up by the next
    composition without a restart.

    Attributes:
        directory: Directory holding ``<categoryId>.json`` files.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def get_category(self, category_id: str) -> CategoryDefinition:
        """Load and validate one category definition.

        Raises:
            CategoryNotFoundError: If the file is missing.
            PipelineError: If the file is not a valid category definition.
        """
        path = self.directory / f"{category_id}.json"
        if not path.is_file():
            raise CategoryNotFoundError(category_id)

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            category = CategoryDefinition.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise PipelineError(f"Invalid category definition {path}: {e}") from e

        if category.category_id != category_id:
            raise PipelineError(
                f"Category file {path} declares id {category.category_id!r}"
            )
        return category

    def list_category_ids(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))


class CatalogSnapshot(BaseModel):
    """Categories fetched for one composition; never shared between calls."""

    categories: tuple[CategoryDefinition, ...]

    model_config = ConfigDict(frozen=True)

    @classmethod
    def fetch(cls, catalog: CategoryCatalog, category_ids: Iterable[str]) -> "CatalogSnapshot":
        """
        Fetch deep copies of ``category_ids`` from ``catalog``.

        Raises:
            CategoryNotFoundError: If any id is unknown.
        """
        categories = tuple(
            catalog.get_category(category_id).model_copy(deep=True)
            for category_id in category_ids
        )
        return cls(categories=categories)

    @property
    def category_ids(self) -> list[str]:
        return [c.category_id for c in self.categories]


class FileTenantDirectory:
    """
    JSON-file implementation of the three tenant collaborators.

    Attributes:
        path: Tenants file (see module docstring for the format).
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.is_file():
            logger.warning("Tenants file not found: %s", self.path)
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PipelineError(f"Invalid tenants file {self.path}: {e}") from e

    def get_profile(self, profile_id: str) -> BusinessProfile:
        for item in self._load().get("profiles", []):
            if item.get("profileId") == profile_id:
                return BusinessProfile.model_validate(item)
        raise ProfileNotFoundError(profile_id)

    def get_label_ids(self, profile_id: str) -> dict[str, str]:
        labels = self._load().get("labels", {}).get(profile_id, {})
        return {str(k): str(v) for k, v in labels.items()}

    def get_binding(self, profile_id: str, provider_id: str) -> Optional[CredentialBinding]:
        for item in self._load().get("credentials", []):
            if item.get("profileId") == profile_id and item.get("providerId") == provider_id:
                return CredentialBinding.model_validate(item)
        return None
