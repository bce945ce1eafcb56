"""
Content-addressed artifact cache.

A cached fit is addressed by the SHA-256 of

    (specification fingerprint, dataset content hash, sampling configuration)

so a change to any prior, term, noise family, data row or sampler setting
yields a different key. Each entry is a directory holding the sampled
``idata.nc`` and a ``metadata.json`` with the key components; a lookup
re-checks the recorded components and never returns an entry that does not
match the request.
"""

from dataclasses import dataclass
from datetime import datetime
import hashlib
import json
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Any, Dict, Mapping, Optional, Union
import warnings

import arviz as az
import pandas as pd

logger = logging.getLogger(__name__)


def dataset_hash(frame: pd.DataFrame) -> str:
    """Content hash of a dataset (column names, dtypes, values and row order)."""
    digest = hashlib.sha256()
    header = [(str(c), str(frame[c].dtype)) for c in frame.columns]
    digest.update(json.dumps(header).encode())
    digest.update(pd.util.hash_pandas_object(frame, index=True).to_numpy().tobytes())
    return digest.hexdigest()


def cache_key(
    specification_fingerprint: str,
    data_hash: str,
    config: Mapping[str, Any]
) -> str:
    """SHA-256 over the three key components."""
    payload = json.dumps(
        {
            "specification": specification_fingerprint,
            "data": data_hash,
            "config": dict(config),
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class CacheEntry:
    """A cache hit: the stored draws plus their metadata."""
    key: str
    idata: az.InferenceData
    metadata: Dict[str, Any]


class ArtifactCache:
    """
    Directory-backed store of sampled InferenceData.

    Example:
        >>> cache = ArtifactCache("./.dbs_cache")
        >>> entry = cache.load(spec.fingerprint(), data_hash, config_dict)
        >>> if entry is None:
        ...     cache.save(idata, spec.fingerprint(), data_hash, config_dict)
    """

    IDATA_FILE = "idata.nc"
    METADATA_FILE = "metadata.json"

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / key

    def contains(self, key: str) -> bool:
        path = self.path_for(key)
        return (path / self.IDATA_FILE).exists() and (path / self.METADATA_FILE).exists()

    def load(
        self,
        specification_fingerprint: str,
        data_hash: str,
        config: Mapping[str, Any]
    ) -> Optional[CacheEntry]:
        """
        Look up an entry.

        Returns:
            CacheEntry, or None when there is no entry, the entry cannot be
            read, or the stored key components do not match the request
        """
        key = cache_key(specification_fingerprint, data_hash, config)
        if not self.contains(key):
            return None

        path = self.path_for(key)
        try:
            with open(path / self.METADATA_FILE, "r") as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            return self._unreadable(key, e)

        expected = {
            "specification": specification_fingerprint,
            "data": data_hash,
            "config": json.loads(json.dumps(dict(config), default=str)),
        }
        stored = {k: metadata.get(k) for k in expected}
        if stored != expected:
            warnings.warn(
                f"Cache entry {key[:12]} does not match its key components; ignoring it",
                UserWarning
            )
            return None

        try:
            idata = az.from_netcdf(path / self.IDATA_FILE)
        except (OSError, ValueError) as e:
            return self._unreadable(key, e)
        logger.info("Loaded cached draws from %s", path)
        return CacheEntry(key=key, idata=idata, metadata=metadata)

    def _unreadable(self, key: str, error: Exception) -> None:
        warnings.warn(f"Cache entry {key[:12]} is unreadable ({error}); ignoring it", UserWarning)
        return None

    def save(
        self,
        idata: az.InferenceData,
        specification_fingerprint: str,
        data_hash: str,
        config: Mapping[str, Any],
        extra: Optional[Mapping[str, Any]] = None
    ) -> str:
        """
        Store draws under their content key.

        The entry is written to a temporary directory first and moved into
        place, so a reader never sees a half-written entry.

        Returns:
            The cache key
        """
        key = cache_key(specification_fingerprint, data_hash, config)
        self.directory.mkdir(parents=True, exist_ok=True)

        metadata = {
            "key": key,
            "specification": specification_fingerprint,
            "data": data_hash,
            "config": dict(config),
            "created": datetime.now().isoformat(),
            **dict(extra or {}),
        }

        staging = Path(tempfile.mkdtemp(dir=self.directory, prefix=".staging-"))
        try:
            idata.to_netcdf(str(staging / self.IDATA_FILE))
            with open(staging / self.METADATA_FILE, "w") as f:
                json.dump(metadata, f, indent=2, default=str)

            target = self.path_for(key)
            if target.exists():
                shutil.rmtree(target)
            staging.rename(target)
        finally:
            if staging.exists():
                shutil.rmtree(staging)

        logger.info("Cached draws to %s", self.path_for(key))
        return key

    def clear(self) -> int:
        """Remove every entry; returns the number removed."""
        if not self.directory.exists():
            return 0
        removed = 0
        for path in self.directory.iterdir():
            if path.is_dir():
                shutil.rmtree(path)
                removed += 1
        return removed
