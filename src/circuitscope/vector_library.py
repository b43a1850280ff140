"""
On-disk library of saved steering vectors.

Vectors live in one JSON file:

    {
      "vectors": [
        {"id": "...", "name": "happy vs sad", "description": null,
         "vector_base64": "...", "dimension": 768, "created_at": 1718000000000},
        ...
      ]
    }

Names are unique: saving a vector under a name that already exists replaces
the stored entry instead of adding a second one.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from src.circuitscope.errors import VectorNotFoundError, VectorSerializationError
from src.circuitscope.interpretability.steering import SteeringVector


logger = logging.getLogger(__name__)

DEFAULT_LIBRARY_PATH = Path("vectors") / "steering_vectors.json"


class VectorLibrary:
    """
    JSON-backed store of SteeringVector records.

    Every call reads the file again, so two processes sharing a library see
    each other's changes (last writer wins).

    Example:
        library = VectorLibrary()
        library.save(vector)
        for v in library.list():
            print(v.name, v.dimension)
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_LIBRARY_PATH):
        self.path = Path(path)

    def _load(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise VectorSerializationError(f"Vector library {self.path} is not valid JSON: {e}") from e
        return data.get("vectors", [])

    def _store(self, records: List[dict]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump({"vectors": records}, f, indent=2)

    def list(self) -> List[SteeringVector]:
        """All stored vectors, oldest first."""
        vectors = [SteeringVector.from_dict(record) for record in self._load()]
        vectors.sort(key=lambda v: v.created_at)
        return vectors

    def save(self, vector: SteeringVector) -> SteeringVector:
        """Store a vector, replacing any entry with the same name."""
        records = self._load()
        replaced = [r for r in records if r.get("name") == vector.name]
        records = [r for r in records if r.get("name") != vector.name]
        records.append(vector.to_dict())
        self._store(records)

        if replaced:
            logger.info("Replaced steering vector '%s'", vector.name)
        else:
            logger.info("Saved steering vector '%s' (%d dims)", vector.name, vector.dimension)
        return vector

    def delete(self, vector_id: str):
        """
        Remove a vector by id.

        Raises:
            VectorNotFoundError: If no vector has that id
        """
        records = self._load()
        remaining = [r for r in records if r.get("id") != vector_id]
        if len(remaining) == len(records):
            raise VectorNotFoundError(f"No steering vector with id {vector_id}")
        self._store(remaining)

    def get(self, vector_id: str) -> SteeringVector:
        for vector in self.list():
            if vector.id == vector_id:
                return vector
        raise VectorNotFoundError(f"No steering vector with id {vector_id}")

    def get_by_name(self, name: str) -> SteeringVector:
        for vector in self.list():
            if vector.name == name:
                return vector
        raise VectorNotFoundError(f"No steering vector named '{name}'")

    def find(self, name_or_id: str) -> Optional[SteeringVector]:
        """Look a vector up by name first, then by id. None if absent."""
        vectors = self.list()
        for vector in vectors:
            if vector.name == name_or_id:
                return vector
        for vector in vectors:
            if vector.id == name_or_id:
                return vector
        return None
