"""
img_data.py - Accessing, loading, unloading, adding and removing images

All functions take a SpatialExperiment (``spe``) and a pair of selectors
(see :mod:`spatialexp.data.indexing`):

    sample_id, image_id : str, True/ALL or None/UNSPECIFIED

Accessors return a single value when exactly one entry is selected and a
list (in table order) otherwise. Modifying functions return a new
SpatialExperiment; the input object is never changed.
"""
from __future__ import annotations
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .core import SpatialExperiment
import logging
import math
import numbers
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from .config import DuplicateEntryError, FetchError, InvalidArgumentError, InvalidSourceError, NotFoundError
from .images import (
    ImageSource,
    LocalPath,
    RemoteUrl,
    SpatialImage,
    Unsourced,
    is_valid_path,
    is_valid_url,
)
from .indexing import resolve_image_index

logger = logging.getLogger(__name__)

Fetcher = Callable[[ImageSource], np.ndarray]


def _one_or_many(values: List):
    if len(values) == 1:
        return values[0]
    return values


# ========== Accessors ==========


def img_raster(spe: 'SpatialExperiment', sample_id=None, image_id=None):
    """
    Get the decoded image(s).

    Returns
    -------
    np.ndarray, None or list
        One raster (None if that image is not loaded) or a list of them
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    return _one_or_many([table.row(i).data.raster for i in idx])


def img_path(spe: 'SpatialExperiment', sample_id=None, image_id=None):
    """
    Get the local file path(s) of the selected image(s).

    Entries that are URL-backed or in-memory only give None.
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    return _one_or_many([table.row(i).data.path for i in idx])


def img_url(spe: 'SpatialExperiment', sample_id=None, image_id=None):
    """
    Get the URL(s) of the selected image(s).

    Entries that are file-backed or in-memory only give None.
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    return _one_or_many([table.row(i).data.url for i in idx])


def scale_factors(spe: 'SpatialExperiment', sample_id=None, image_id=None):
    """Get the scale factor(s) of the selected image(s)."""
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    return _one_or_many([table.row(i).data.scale_factor for i in idx])


# ========== Loading / Unloading ==========


def load_img(spe: 'SpatialExperiment', sample_id=None, image_id=None,
             fetcher: Optional[Fetcher] = None) -> 'SpatialExperiment':
    """
    Read the selected images into memory.

    Entries that are already loaded are skipped. Entries are processed in
    table order; if one of them fails, the raised FetchError carries the
    entries loaded up to that point in ``partial`` (a SpatialExperiment)
    and the failing ``(sample_id, image_id)`` in ``failed``.

    Parameters
    ----------
    spe : SpatialExperiment
        Object holding the images
    sample_id, image_id : str, True or None
        Selectors
    fetcher : callable, optional
        ``fetcher(source) -> np.ndarray``; defaults to OpenCV/urllib reading

    Returns
    -------
    SpatialExperiment
        New object with the images loaded

    Raises
    ------
    NotFoundError
        If the selectors match nothing
    FetchError
        If an image cannot be read or decoded
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    todo = [i for i in idx if not table.row(i).data.is_loaded]

    for i in todo:
        row = table.row(i)
        try:
            record = row.data.loaded(fetcher=fetcher, config=spe.config)
        except FetchError as e:
            e.partial = spe.with_img_data(table)
            e.failed = (row.sample_id, row.image_id)
            logger.error("Failed to load image (%s, %s): %s", row.sample_id, row.image_id, e)
            raise
        table = table.replace(i, record)

    logger.info("Loaded %d image(s) (%d already in memory)", len(todo), len(idx) - len(todo))
    return spe.with_img_data(table)


def unload_img(spe: 'SpatialExperiment', sample_id=None, image_id=None) -> 'SpatialExperiment':
    """
    Drop the decoded pixels of the selected images.

    Path, URL and scale factor are kept so the images can be loaded again.
    Images supplied only as in-memory arrays have nothing to be reloaded
    from and stay loaded.

    Returns
    -------
    SpatialExperiment
        New object with the images unloaded
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)

    n_unloaded = 0
    for i in idx:
        row = table.row(i)
        if not row.data.is_loaded:
            continue
        if isinstance(row.data.source, Unsourced):
            logger.warning(
                "Keeping image (%s, %s) in memory: it has no path or URL to be reloaded from",
                row.sample_id, row.image_id,
            )
            continue
        table = table.replace(i, row.data.unloaded())
        n_unloaded += 1

    logger.info("Unloaded %d image(s)", n_unloaded)
    return spe.with_img_data(table)


# ========== Adding / Removing ==========


def _check_add_args(spe: 'SpatialExperiment', scale_factor, sample_id, image_id, load) -> None:
    if isinstance(scale_factor, (bool, np.bool_)) or not isinstance(scale_factor, numbers.Real):
        raise InvalidArgumentError(f"'scale_factor' should be a single number, got {scale_factor!r}")
    try:
        as_float = float(scale_factor)
    except OverflowError as e:
        raise InvalidArgumentError(f"'scale_factor' is too large: {scale_factor!r}") from e
    if math.isinf(as_float):
        raise InvalidArgumentError("'scale_factor' must be finite or NaN")

    if not isinstance(sample_id, str):
        raise InvalidArgumentError(f"'sample_id' should be a single character string, got {sample_id!r}")
    if sample_id not in spe.sample_ids:
        raise InvalidArgumentError(
            f"'sample_id' {sample_id!r} is not one of the object's samples: {spe.sample_ids}"
        )

    if not isinstance(image_id, str):
        raise InvalidArgumentError(f"'image_id' should be a single character string, got {image_id!r}")

    if not isinstance(load, (bool, np.bool_)):
        raise InvalidArgumentError(f"'load' should be True or False, got {load!r}")


def _as_source(image_source, config) -> ImageSource:
    """Classify a user-supplied path or URL."""
    if is_valid_path(image_source, config):
        return LocalPath(str(Path(image_source)))
    if is_valid_url(image_source, config):
        return RemoteUrl(image_source)
    raise InvalidSourceError(image_source)


def add_img(spe: 'SpatialExperiment', image_source, scale_factor, sample_id: str, image_id: str,
            load: bool = True, fetcher: Optional[Fetcher] = None) -> 'SpatialExperiment':
    """
    Add an image entry.

    Parameters
    ----------
    spe : SpatialExperiment
        Object to add the image to
    image_source : str or Path
        Image file (.png, .jpg, .jpeg, .tif, .tiff) or URL
    scale_factor : float
        Scale factor for the image; NaN if unknown
    sample_id : str
        One of the object's samples
    image_id : str
        Identifier of the new image; must be unused for this sample
    load : bool
        Read the image into memory now, rather than just storing its source
    fetcher : callable, optional
        Custom image reader used when ``load`` is True

    Returns
    -------
    SpatialExperiment
        New object with the entry appended

    Raises
    ------
    InvalidArgumentError
        If a scalar argument is malformed or the sample is unknown
    InvalidSourceError
        If ``image_source`` is neither an image file nor a URL
    DuplicateEntryError
        If ``(sample_id, image_id)`` already exists
    FetchError
        If ``load`` is True and reading fails (nothing is added)
    """
    _check_add_args(spe, scale_factor, sample_id, image_id, load)
    source = _as_source(image_source, spe.config)

    table = spe.img_data
    try:
        resolve_image_index(table, sample_id, image_id)
    except NotFoundError:
        pass
    else:
        raise DuplicateEntryError(sample_id, image_id)

    record = SpatialImage(source=source, scale_factor=float(scale_factor))
    if load:
        record = record.loaded(fetcher=fetcher, config=spe.config)

    logger.debug("Adding image (%s, %s) from %s", sample_id, image_id, source)
    return spe.with_img_data(table.append(sample_id, image_id, record))


def remove_img(spe: 'SpatialExperiment', sample_id=None, image_id=None) -> 'SpatialExperiment':
    """
    Remove the selected image entries.

    Remaining entries keep their relative order.

    Raises
    ------
    NotFoundError
        If the selectors match nothing
    """
    table = spe.img_data
    idx = resolve_image_index(table, sample_id, image_id)
    logger.debug("Removing %d image(s)", len(idx))
    return spe.with_img_data(table.drop(idx))
