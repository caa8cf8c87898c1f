"""
config.py - Configuration and data structures for spatialexp

Contains:
- SpatialExperimentConfig: Configuration settings
- SpatialData: Efficient spatial coordinate storage
- Exception hierarchy shared by the container, image table and loaders
"""

from dataclasses import dataclass

import numpy as np


@dataclass
class SpatialExperimentConfig:
    """Configuration for spatialexp column names and settings."""

    # Column names
    cell_id_col: str = "barcode"
    sample_id_col: str = "sample_id"
    x_col: str = "array_col"
    y_col: str = "array_row"

    # Image settings
    image_extensions: tuple[str, ...] = (".png", ".jpg", ".jpeg", ".tif", ".tiff")
    url_schemes: tuple[str, ...] = ("http", "https", "ftp")
    fetch_timeout: float = 30.0  # seconds, for URL-sourced images

    # Sample settings
    default_sample_id: str = "sample01"

    def get_coordinate_columns(self) -> tuple[str, str]:
        """
        Get x, y column names.

        Returns
        -------
        Tuple[str, str]
            (x_column, y_column)
        """
        return self.x_col, self.y_col


@dataclass
class SpatialData:
    """
    Efficient container for spatial coordinates.

    Uses numpy arrays for fast computation.
    """

    x: np.ndarray
    y: np.ndarray

    def __len__(self) -> int:
        return len(self.x)

    def __post_init__(self):
        """Validate both arrays have same length."""
        self.x = np.asarray(self.x, dtype=float)
        self.y = np.asarray(self.y, dtype=float)
        if len(self.x) != len(self.y):
            raise ValueError(f"Coordinate arrays have different lengths: {[len(self.x), len(self.y)]}")

    def subset(self, indices: np.ndarray) -> "SpatialData":
        """
        Efficiently subset by integer indices.

        Parameters
        ----------
        indices : np.ndarray
            Integer indices to keep

        Returns
        -------
        SpatialData
            New SpatialData with subset
        """
        return SpatialData(x=self.x[indices], y=self.y[indices])

    def scaled(self, factor: float) -> "SpatialData":
        """Return coordinates multiplied by an image scale factor."""
        return SpatialData(x=self.x * factor, y=self.y * factor)

    def to_array(self) -> np.ndarray:
        """Stack into an (n, 2) array."""
        return np.column_stack([self.x, self.y])

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"x": self.x, "y": self.y}

    @classmethod
    def concat(cls, parts: list["SpatialData"]) -> "SpatialData":
        """Concatenate coordinate blocks in order."""
        return cls(
            x=np.concatenate([p.x for p in parts]) if parts else np.array([]),
            y=np.concatenate([p.y for p in parts]) if parts else np.array([]),
        )

    @classmethod
    def from_dataframe(cls, df, config: SpatialExperimentConfig) -> "SpatialData":
        """
        Create from DataFrame.

        Parameters
        ----------
        df : pd.DataFrame
            DataFrame with coordinate columns
        config : SpatialExperimentConfig
            Configuration with column names

        Returns
        -------
        SpatialData
        """
        x_col, y_col = config.get_coordinate_columns()
        missing = [c for c in (x_col, y_col) if c not in df.columns]
        if missing:
            raise ValueError(f"Missing spatial columns: {missing}")

        return cls(x=df[x_col].values, y=df[y_col].values)


class SpatialExperimentError(Exception):
    """Base exception for spatialexp errors."""

    pass


class ConsistencyError(SpatialExperimentError):
    """Raised when data consistency checks fail."""

    pass


class ValidationError(SpatialExperimentError):
    """Raised when data validation fails."""

    pass


class InvalidArgumentError(SpatialExperimentError, ValueError):
    """Raised when a scalar or selector argument has the wrong type or arity."""

    pass


class NotFoundError(SpatialExperimentError, KeyError):
    """Raised when a sample/image selector matches no image entry."""

    def __init__(self, sample_id, image_id):
        self.sample_id = sample_id
        self.image_id = image_id
        super().__init__(f"No 'img_data' entry(ies) matched sample_id={sample_id!r} and image_id={image_id!r}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class DuplicateEntryError(SpatialExperimentError):
    """Raised when an image entry with the same identifiers already exists."""

    def __init__(self, sample_id: str, image_id: str):
        self.sample_id = sample_id
        self.image_id = image_id
        super().__init__(
            f"'img_data' already contains an entry with image_id={image_id!r} and sample_id={sample_id!r}"
        )


class InvalidSourceError(SpatialExperimentError, ValueError):
    """Raised when an image source is neither a valid image file nor a URL."""

    def __init__(self, source):
        self.source = source
        super().__init__(
            f"Invalid image source {source!r}; should be an image file name "
            "(.png, .jpg or .tif) or URL to source the image from"
        )


class SourceUnavailableError(SpatialExperimentError):
    """Raised when an image has to be loaded but has nowhere to be loaded from."""

    pass


class FetchError(SpatialExperimentError, IOError):
    """
    Raised when reading or decoding an image fails.

    When raised from a batch load, ``partial`` holds the experiment with the
    entries loaded before the failure and ``failed`` the offending
    ``(sample_id, image_id)`` pair.
    """

    def __init__(self, message: str, source=None):
        self.source = source
        self.partial = None
        self.failed = None
        super().__init__(message)
