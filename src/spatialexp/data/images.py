"""
images.py - Image records and the per-experiment image table

An image is described by where it comes from (a local file, a URL, or
nowhere when it was supplied as an in-memory array), an optional decoded
raster and the scale factor that maps spatial coordinates onto its pixels.
"""
from __future__ import annotations

import logging
import math
import urllib.error
import urllib.request
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import cv2
import numpy as np
import pandas as pd

from .config import (
    DuplicateEntryError,
    FetchError,
    InvalidArgumentError,
    SourceUnavailableError,
    SpatialExperimentConfig,
)

logger = logging.getLogger(__name__)


# ========== Image sources ==========


@dataclass(frozen=True)
class LocalPath:
    """Image backed by a file on disk."""

    path: str


@dataclass(frozen=True)
class RemoteUrl:
    """Image backed by a URL."""

    url: str


@dataclass(frozen=True)
class Unsourced:
    """Image supplied purely as in-memory data."""

    pass


ImageSource = Union[LocalPath, RemoteUrl, Unsourced]


def is_valid_path(value, config: Optional[SpatialExperimentConfig] = None) -> bool:
    """Check that ``value`` names an existing file with an image extension."""
    config = config or SpatialExperimentConfig()
    if not isinstance(value, (str, Path)):
        return False
    path = Path(value)
    return path.is_file() and path.suffix.lower() in config.image_extensions


def is_valid_url(value, config: Optional[SpatialExperimentConfig] = None) -> bool:
    """Check that ``value`` is a syntactically valid URL (scheme and host)."""
    config = config or SpatialExperimentConfig()
    if not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme.lower() in config.url_schemes and bool(parsed.netloc)


def fetch_image(source: ImageSource, config: Optional[SpatialExperimentConfig] = None) -> np.ndarray:
    """
    Read and decode an image.

    Parameters
    ----------
    source : LocalPath or RemoteUrl
        Where to read the image from
    config : SpatialExperimentConfig, optional
        Supplies the network timeout

    Returns
    -------
    np.ndarray
        Decoded image (OpenCV BGR channel order)

    Raises
    ------
    FetchError
        If the file/URL cannot be read or decoded
    SourceUnavailableError
        If ``source`` is ``Unsourced``
    """
    config = config or SpatialExperimentConfig()

    if isinstance(source, LocalPath):
        logger.debug("Reading image from %s", source.path)
        if not Path(source.path).is_file():
            raise FetchError(f"Image file not found: {source.path}", source)
        img = cv2.imread(str(source.path), cv2.IMREAD_COLOR)
        if img is None:
            raise FetchError(f"Could not decode image file: {source.path}", source)
        return img

    if isinstance(source, RemoteUrl):
        logger.debug("Downloading image from %s", source.url)
        try:
            with urllib.request.urlopen(source.url, timeout=config.fetch_timeout) as response:
                payload = response.read()
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise FetchError(f"Could not download image from {source.url}: {e}", source) from e
        if not payload:
            raise FetchError(f"Empty response downloading image from {source.url}", source)
        try:
            img = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
        except cv2.error as e:
            raise FetchError(f"Could not decode image downloaded from {source.url}: {e}", source) from e
        if img is None:
            raise FetchError(f"Could not decode image downloaded from {source.url}", source)
        return img

    raise SourceUnavailableError("Image has no path or URL to be loaded from")


# ========== Image record ==========


@dataclass(frozen=True)
class SpatialImage:
    """
    A single image associated with one sample.

    Attributes
    ----------
    source : LocalPath, RemoteUrl or Unsourced
        Where the image can be (re)loaded from
    raster : np.ndarray, optional
        Decoded pixels; None while the image is not loaded
    scale_factor : float
        Multiplier from spatial coordinates to this image's pixels (may be NaN)
    """

    source: ImageSource
    raster: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    scale_factor: float = float("nan")

    def __post_init__(self):
        if not isinstance(self.source, (LocalPath, RemoteUrl, Unsourced)):
            raise InvalidArgumentError(f"Unsupported image source: {self.source!r}")
        if isinstance(self.source, Unsourced) and self.raster is None:
            raise InvalidArgumentError("An image without a path or URL must hold a raster")
        object.__setattr__(self, "scale_factor", float(self.scale_factor))

    @classmethod
    def from_array(cls, raster: np.ndarray, scale_factor: float = float("nan")) -> "SpatialImage":
        """Wrap an in-memory array."""
        return cls(source=Unsourced(), raster=np.asarray(raster), scale_factor=scale_factor)

    @property
    def path(self) -> Optional[str]:
        """Local file path, or None if the image is not file-backed."""
        if isinstance(self.source, LocalPath):
            return self.source.path
        return None

    @property
    def url(self) -> Optional[str]:
        """URL, or None if the image is not URL-backed."""
        if isinstance(self.source, RemoteUrl):
            return self.source.url
        return None

    @property
    def is_loaded(self) -> bool:
        return self.raster is not None

    @property
    def shape(self) -> Optional[Tuple[int, ...]]:
        return None if self.raster is None else self.raster.shape

    def with_raster(self, raster: np.ndarray) -> "SpatialImage":
        """Return a copy holding ``raster``."""
        return replace(self, raster=raster)

    def unloaded(self) -> "SpatialImage":
        """Return a copy with the raster dropped (source and scale kept)."""
        if isinstance(self.source, Unsourced):
            raise SourceUnavailableError("Cannot unload an image that has no path or URL")
        return replace(self, raster=None)

    def loaded(
        self,
        fetcher: Optional[Callable[[ImageSource], np.ndarray]] = None,
        config: Optional[SpatialExperimentConfig] = None,
    ) -> "SpatialImage":
        """Return a copy with the raster read from ``source`` (no-op if loaded)."""
        if self.raster is not None:
            return self
        if isinstance(self.source, Unsourced):
            raise SourceUnavailableError("Image has no path or URL to be loaded from")
        if fetcher is None:
            raster = fetch_image(self.source, config)
        else:
            try:
                raster = fetcher(self.source)
            except FetchError:
                raise
            except (OSError, ValueError, RuntimeError, cv2.error) as e:
                raise FetchError(f"Could not load image from {self.source}: {e}", self.source) from e
        if raster is None:
            raise FetchError(f"No image data returned for {self.source}", self.source)
        return self.with_raster(raster)

    def __eq__(self, other) -> bool:
        # Rasters are not compared; NaN scale factors compare equal
        if not isinstance(other, SpatialImage):
            return NotImplemented
        same_scale = self.scale_factor == other.scale_factor or (
            math.isnan(self.scale_factor) and math.isnan(other.scale_factor)
        )
        return self.source == other.source and same_scale

    def __hash__(self) -> int:
        return hash(self.source)

    def __repr__(self) -> str:
        if isinstance(self.source, LocalPath):
            where = f"path={self.source.path!r}"
        elif isinstance(self.source, RemoteUrl):
            where = f"url={self.source.url!r}"
        else:
            where = "in-memory"
        state = f"loaded {self.raster.shape}" if self.raster is not None else "unloaded"
        return f"SpatialImage({where}, {state}, scale_factor={self.scale_factor:g})"


# ========== Image table ==========


@dataclass(frozen=True)
class ImageRow:
    """One entry of an ImageTable."""

    sample_id: str
    image_id: str
    data: SpatialImage


class ImageTable:
    """
    Ordered collection of images keyed by ``(sample_id, image_id)``.

    The table is treated as a value: every modifying operation returns a
    new table and leaves the original untouched. The identifier pair is
    unique across rows.
    """

    def __init__(self, rows: Optional[Sequence[Union[ImageRow, Tuple[str, str, SpatialImage]]]] = None):
        self._rows: Tuple[ImageRow, ...] = tuple(
            r if isinstance(r, ImageRow) else ImageRow(*r) for r in (rows or ())
        )

        seen = set()
        for row in self._rows:
            if not isinstance(row.data, SpatialImage):
                raise InvalidArgumentError(
                    f"Entry ({row.sample_id!r}, {row.image_id!r}) is not a SpatialImage: {type(row.data)}"
                )
            key = (row.sample_id, row.image_id)
            if key in seen:
                raise DuplicateEntryError(*key)
            seen.add(key)

    # ========== Read access ==========

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[ImageRow]:
        return iter(self._rows)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ImageTable):
            return NotImplemented
        return self._rows == other._rows

    def row(self, position: int) -> ImageRow:
        return self._rows[position]

    @property
    def sample_ids(self) -> List[str]:
        return [r.sample_id for r in self._rows]

    @property
    def image_ids(self) -> List[str]:
        return [r.image_id for r in self._rows]

    @property
    def records(self) -> List[SpatialImage]:
        return [r.data for r in self._rows]

    @property
    def n_loaded(self) -> int:
        return sum(1 for r in self._rows if r.data.is_loaded)

    def memory_usage_mb(self) -> float:
        """Memory held by loaded rasters, in MB."""
        total_bytes = sum(r.data.raster.nbytes for r in self._rows if r.data.is_loaded)
        return total_bytes / (1024 * 1024)

    # ========== Copy-on-write updates ==========

    def append(self, sample_id: str, image_id: str, data: SpatialImage) -> "ImageTable":
        """Return a new table with one row added at the end."""
        return ImageTable(self._rows + (ImageRow(sample_id, image_id, data),))

    def replace(self, position: int, data: SpatialImage) -> "ImageTable":
        """Return a new table with the record at ``position`` swapped."""
        rows = list(self._rows)
        old = rows[position]
        rows[position] = ImageRow(old.sample_id, old.image_id, data)
        return ImageTable(rows)

    def drop(self, positions: Sequence[int]) -> "ImageTable":
        """Return a new table without the rows at ``positions``."""
        drop_set = set(positions)
        return ImageTable([r for i, r in enumerate(self._rows) if i not in drop_set])

    def subset_samples(self, sample_ids: Sequence[str]) -> "ImageTable":
        """Return a new table with only rows belonging to ``sample_ids``."""
        keep = set(str(s) for s in sample_ids)
        return ImageTable([r for r in self._rows if r.sample_id in keep])

    @classmethod
    def concat(cls, tables: Sequence["ImageTable"]) -> "ImageTable":
        """Stack tables in order; duplicate identifier pairs are rejected."""
        rows = []
        for table in tables:
            rows.extend(table)
        return cls(rows)

    # ========== Conversion ==========

    def to_dataframe(self) -> pd.DataFrame:
        """
        Tabular view with columns ``sample_id``, ``image_id``, ``data`` and
        ``scale_factor``.
        """
        return pd.DataFrame(
            {
                "sample_id": self.sample_ids,
                "image_id": self.image_ids,
                "data": self.records,
                "scale_factor": [r.data.scale_factor for r in self._rows],
            },
            columns=["sample_id", "image_id", "data", "scale_factor"],
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ImageTable":
        """
        Build from a DataFrame with ``sample_id``, ``image_id`` and ``data``
        columns. A ``scale_factor`` column, when present, overrides the
        records' own scale factors.
        """
        required = ["sample_id", "image_id", "data"]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise InvalidArgumentError(f"Image DataFrame is missing columns: {missing}")

        rows = []
        for rec in df.to_dict("records"):
            data = rec["data"]
            if not isinstance(data, SpatialImage):
                raise InvalidArgumentError(f"'data' entries must be SpatialImage, got {type(data)}")
            sf = rec.get("scale_factor")
            if sf is not None and not pd.isna(sf):
                data = replace(data, scale_factor=float(sf))
            rows.append(ImageRow(str(rec["sample_id"]), str(rec["image_id"]), data))
        return cls(rows)

    def __repr__(self) -> str:
        return f"ImageTable with {len(self)} image(s) ({self.n_loaded} loaded)\n{self.to_dataframe()}"
