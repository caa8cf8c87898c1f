"""
data - Core data structures, image handling and readers

This module contains the SpatialExperiment container, the image table
with its selector-based accessors, and loaders for platform output.
"""

from .config import (
    SpatialExperimentConfig,
    SpatialData,
    SpatialExperimentError,
    ConsistencyError,
    ValidationError,
    InvalidArgumentError,
    NotFoundError,
    DuplicateEntryError,
    InvalidSourceError,
    SourceUnavailableError,
    FetchError,
)

from .expression import ExpressionMatrix
from .images import (
    LocalPath,
    RemoteUrl,
    Unsourced,
    SpatialImage,
    ImageRow,
    ImageTable,
    fetch_image,
    is_valid_path,
    is_valid_url,
)
from .indexing import ALL, UNSPECIFIED, Selector, resolve_image_index
from .img_data import (
    img_raster,
    img_path,
    img_url,
    scale_factors,
    load_img,
    unload_img,
    add_img,
    remove_img,
)
from .core import SpatialExperiment
from .loaders import read_10x_visium, read_10x_counts, read_positions, read_img_data

__all__ = [
    # Core class
    'SpatialExperiment',

    # Configuration
    'SpatialExperimentConfig',
    'SpatialData',

    # Components
    'ExpressionMatrix',
    'LocalPath',
    'RemoteUrl',
    'Unsourced',
    'SpatialImage',
    'ImageRow',
    'ImageTable',
    'fetch_image',
    'is_valid_path',
    'is_valid_url',

    # Selectors
    'ALL',
    'UNSPECIFIED',
    'Selector',
    'resolve_image_index',

    # Image data methods
    'img_raster',
    'img_path',
    'img_url',
    'scale_factors',
    'load_img',
    'unload_img',
    'add_img',
    'remove_img',

    # Loaders
    'read_10x_visium',
    'read_10x_counts',
    'read_positions',
    'read_img_data',

    # Exceptions
    'SpatialExperimentError',
    'ConsistencyError',
    'ValidationError',
    'InvalidArgumentError',
    'NotFoundError',
    'DuplicateEntryError',
    'InvalidSourceError',
    'SourceUnavailableError',
    'FetchError',
]
