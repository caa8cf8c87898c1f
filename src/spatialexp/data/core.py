"""
core.py - Main SpatialExperiment class for spatial single-cell data

SpatialExperiment joins a count matrix with per-observation metadata,
spatial coordinates and a table of images, one or more per sample.
"""
from __future__ import annotations
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import anndata
import copy as copy_module
import logging
import pickle
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from . import img_data as img_ops
from .config import ConsistencyError, InvalidArgumentError, SpatialData, SpatialExperimentConfig
from .expression import ExpressionMatrix
from .images import ImageTable

logger = logging.getLogger(__name__)


class SpatialExperiment:
    """
    Spatial single-cell experiment.

    Core Principles:
    - Master Index: observation IDs stored once as primary index
    - Every observation belongs to exactly one sample (``sample_id`` column)
    - Images are kept in an ImageTable keyed by (sample_id, image_id)
    - Value semantics: image operations return a new SpatialExperiment

    Attributes
    ----------
    _cell_index : pd.Index
        Master observation index (single source of truth)
    _gene_index : pd.Index
        Master gene index
    _expression : ExpressionMatrix
        Count data
    _cell_meta : pd.DataFrame
        Observation metadata (aligned to _cell_index), includes sample_id
    _gene_meta : pd.DataFrame
        Gene metadata (aligned to _gene_index)
    _spatial : SpatialData
        Spatial coordinates
    _img_data : ImageTable
        Images per sample
    """

    def __init__(self,
                 expression: Union[np.ndarray, sparse.spmatrix, ExpressionMatrix],
                 cell_ids: Union[List[str], pd.Index],
                 gene_names: Union[List[str], pd.Index],
                 cell_metadata: Optional[pd.DataFrame] = None,
                 gene_metadata: Optional[pd.DataFrame] = None,
                 spatial_coords: Optional[Union[Dict, SpatialData, pd.DataFrame]] = None,
                 img_data: Optional[Union[ImageTable, pd.DataFrame]] = None,
                 sample_id: Optional[Union[str, Sequence[str]]] = None,
                 config: Optional[SpatialExperimentConfig] = None):
        """
        Initialize SpatialExperiment object.

        Parameters
        ----------
        expression : array-like or ExpressionMatrix
            Count matrix (observations × genes)
        cell_ids : list or Index
            Observation identifiers
        gene_names : list or Index
            Gene names
        cell_metadata : DataFrame, optional
            Observation annotations. Will be aligned to cell_ids.
        gene_metadata : DataFrame, optional
            Gene annotations. Will be aligned to gene_names.
        spatial_coords : dict, SpatialData, or DataFrame, optional
            Spatial coordinates. Can be:
            - Dict with keys: x, y
            - SpatialData object
            - DataFrame with the configured coordinate columns
        img_data : ImageTable or DataFrame, optional
            Images; every entry's sample_id must be a known sample
        sample_id : str or sequence of str, optional
            Sample identifier(s), used when cell_metadata has no sample column
        config : SpatialExperimentConfig, optional
            Configuration object
        """
        self.config = config or SpatialExperimentConfig()

        # STEP 1: Establish master indices
        self._cell_index = pd.Index(cell_ids, name=self.config.cell_id_col).astype(str)
        self._gene_index = pd.Index(gene_names, name='gene').astype(str)
        self._n_cells = len(self._cell_index)
        self._n_genes = len(self._gene_index)

        if self._cell_index.has_duplicates:
            raise ConsistencyError("Observation identifiers must be unique")

        # STEP 2: Store expression efficiently
        if isinstance(expression, ExpressionMatrix):
            self._expression = expression.with_cell_ids(self._cell_index)
        else:
            self._expression = ExpressionMatrix(
                data=expression,
                cell_ids=self._cell_index,
                gene_names=self._gene_index,
                auto_sparse=True,
            )

        # STEP 3: Store and align metadata
        self._cell_meta = self._prepare_cell_metadata(cell_metadata, sample_id)
        self._gene_meta = self._prepare_gene_metadata(gene_metadata)

        # STEP 4: Store spatial coordinates
        self._spatial = self._prepare_spatial_coords(spatial_coords)

        # STEP 5: Images
        self._img_data = self._prepare_img_data(img_data)

        self.validate_consistency(raise_error=True)
        logger.debug(
            "Created SpatialExperiment: %d observations × %d genes, %d sample(s), %d image(s)",
            self._n_cells, self._n_genes, len(self.sample_ids), len(self._img_data),
        )

    # ========== Data Preparation Methods ==========

    def _prepare_cell_metadata(self,
                               cell_metadata: Optional[pd.DataFrame],
                               sample_id: Optional[Union[str, Sequence[str]]]) -> pd.DataFrame:
        """Prepare and align observation metadata to master index."""
        sample_col = self.config.sample_id_col

        if cell_metadata is None:
            aligned = pd.DataFrame(index=self._cell_index)
        else:
            cell_id_col = self.config.cell_id_col
            if cell_id_col in cell_metadata.columns:
                cell_metadata = cell_metadata.set_index(cell_id_col)
            cell_metadata = cell_metadata.copy()
            cell_metadata.index = cell_metadata.index.astype(str)

            aligned = cell_metadata.reindex(self._cell_index)

            n_extra = len(cell_metadata.index.difference(self._cell_index))
            n_missing = len(self._cell_index.difference(cell_metadata.index))
            if n_missing > 0:
                logger.warning("%d observations missing metadata (filled with NaN)", n_missing)
            if n_extra > 0:
                logger.warning("%d metadata rows not in expression (dropped)", n_extra)

        if sample_col not in aligned.columns or aligned[sample_col].isna().all():
            if sample_id is None:
                sample_id = self.config.default_sample_id
            if isinstance(sample_id, str):
                aligned[sample_col] = sample_id
            else:
                sample_id = list(sample_id)
                if len(sample_id) != self._n_cells:
                    raise ValueError(
                        f"'sample_id' length ({len(sample_id)}) != n_cells ({self._n_cells})"
                    )
                aligned[sample_col] = sample_id
        elif isinstance(sample_id, str):
            aligned[sample_col] = aligned[sample_col].fillna(sample_id)

        if aligned[sample_col].isna().any():
            raise ConsistencyError(f"Every observation needs a '{sample_col}'")
        aligned[sample_col] = aligned[sample_col].astype(str)

        return aligned

    def _prepare_gene_metadata(self, gene_metadata: Optional[pd.DataFrame]) -> pd.DataFrame:
        """Prepare and align gene metadata to master gene index."""
        if gene_metadata is None:
            return pd.DataFrame(index=self._gene_index)

        if 'gene' in gene_metadata.columns:
            gene_metadata = gene_metadata.set_index('gene')

        gene_metadata = gene_metadata.copy()
        gene_metadata.index = gene_metadata.index.astype(str)
        aligned = gene_metadata.reindex(self._gene_index)

        n_missing = len(self._gene_index.difference(gene_metadata.index))
        if n_missing > 0:
            logger.warning("%d genes missing metadata", n_missing)

        return aligned

    def _prepare_spatial_coords(self,
                                spatial_coords: Optional[Union[Dict, SpatialData, pd.DataFrame]]) -> SpatialData:
        """Prepare spatial coordinates aligned to master index."""

        # Case 1: None provided
        if spatial_coords is None:
            return SpatialData(x=np.full(self._n_cells, np.nan), y=np.full(self._n_cells, np.nan))

        # Case 2: Already SpatialData
        if isinstance(spatial_coords, SpatialData):
            if len(spatial_coords) != self._n_cells:
                raise ValueError(
                    f"SpatialData length ({len(spatial_coords)}) != n_cells ({self._n_cells})"
                )
            return spatial_coords

        # Case 3: DataFrame
        if isinstance(spatial_coords, pd.DataFrame):
            spatial_coords = spatial_coords.copy()
            spatial_coords.index = spatial_coords.index.astype(str)
            # Align by ID when the frame is indexed by observations, else by position
            if self._cell_index.isin(spatial_coords.index).all():
                spatial_coords = spatial_coords.reindex(self._cell_index)
            elif len(spatial_coords) != self._n_cells:
                raise ValueError(
                    f"Spatial DataFrame length ({len(spatial_coords)}) != n_cells ({self._n_cells})"
                )
            return SpatialData.from_dataframe(spatial_coords, self.config)

        # Case 4: Dictionary
        if isinstance(spatial_coords, dict):
            missing = [k for k in ('x', 'y') if k not in spatial_coords]
            if missing:
                raise ValueError(f"Missing spatial keys: {missing}")

            for key in ('x', 'y'):
                arr = np.asarray(spatial_coords[key])
                if len(arr) != self._n_cells:
                    raise ValueError(
                        f"Coordinate '{key}' length ({len(arr)}) != n_cells ({self._n_cells})"
                    )

            return SpatialData(x=spatial_coords['x'], y=spatial_coords['y'])

        raise TypeError(f"Unsupported spatial_coords type: {type(spatial_coords)}")

    def _prepare_img_data(self, img_data: Optional[Union[ImageTable, pd.DataFrame]]) -> ImageTable:
        """Normalise the image table input."""
        if img_data is None:
            return ImageTable()
        if isinstance(img_data, ImageTable):
            return img_data
        if isinstance(img_data, pd.DataFrame):
            return ImageTable.from_dataframe(img_data)
        raise TypeError(f"Unsupported img_data type: {type(img_data)}")

    # ========== Consistency Validation ==========

    def validate_consistency(self, raise_error: bool = False) -> Dict[str, bool]:
        """
        Validate all components are consistent.

        Parameters
        ----------
        raise_error : bool
            If True, raise error on inconsistency

        Returns
        -------
        dict
            Status of each component
        """
        status = {}
        issues = []

        status['expression_cells'] = self._expression.shape[0] == self._n_cells
        status['expression_genes'] = self._expression.shape[1] == self._n_genes
        if not status['expression_cells']:
            issues.append(f"Expression has {self._expression.shape[0]} observations, expected {self._n_cells}")
        if not status['expression_genes']:
            issues.append(f"Expression has {self._expression.shape[1]} genes, expected {self._n_genes}")

        status['cell_metadata'] = len(self._cell_meta) == self._n_cells
        if not status['cell_metadata']:
            issues.append(f"Cell metadata has {len(self._cell_meta)} rows, expected {self._n_cells}")

        status['gene_metadata'] = len(self._gene_meta) == self._n_genes
        if not status['gene_metadata']:
            issues.append(f"Gene metadata has {len(self._gene_meta)} rows, expected {self._n_genes}")

        status['spatial'] = len(self._spatial) == self._n_cells
        if not status['spatial']:
            issues.append(f"Spatial coords have {len(self._spatial)} entries, expected {self._n_cells}")

        # Images may only reference known samples
        unknown = set(self._img_data.sample_ids) - set(self.sample_ids)
        status['images'] = len(unknown) == 0
        if not status['images']:
            issues.append(f"Images reference unknown sample(s): {sorted(unknown)}")

        status['overall'] = all(status.values())

        if issues and raise_error:
            raise ConsistencyError("\n".join(issues))

        return status

    # ========== Properties ==========

    @property
    def cell_index(self) -> pd.Index:
        """Get master observation index."""
        return self._cell_index

    @property
    def gene_index(self) -> pd.Index:
        """Get master gene index."""
        return self._gene_index

    @property
    def n_cells(self) -> int:
        return self._n_cells

    @property
    def n_genes(self) -> int:
        return self._n_genes

    @property
    def expression(self) -> ExpressionMatrix:
        return self._expression

    @property
    def cell_meta(self) -> pd.DataFrame:
        """Get observation metadata (aligned to master index)."""
        return self._cell_meta

    @property
    def gene_meta(self) -> pd.DataFrame:
        """Get gene metadata (aligned to master index)."""
        return self._gene_meta

    @property
    def spatial(self) -> SpatialData:
        return self._spatial

    @property
    def sample_id(self) -> pd.Series:
        """Per-observation sample identifiers."""
        return self._cell_meta[self.config.sample_id_col]

    @property
    def sample_ids(self) -> List[str]:
        """Known sample identifiers, in order of first appearance."""
        return list(pd.unique(self._cell_meta[self.config.sample_id_col]))

    @property
    def in_tissue(self) -> Optional[pd.Series]:
        """Whether each spot lies on tissue (Visium); None if unknown."""
        if 'in_tissue' not in self._cell_meta.columns:
            return None
        return self._cell_meta['in_tissue'].astype(bool)

    @property
    def img_data(self) -> ImageTable:
        """Get the image table."""
        return self._img_data

    def with_img_data(self, img_data: Union[ImageTable, pd.DataFrame]) -> 'SpatialExperiment':
        """
        Return a copy of this object holding a different image table.

        The input object is left unchanged.
        """
        new_obj = copy_module.copy(self)
        new_obj._img_data = self._prepare_img_data(img_data)
        new_obj.validate_consistency(raise_error=True)
        return new_obj

    # ========== Image Data Methods ==========

    def img_raster(self, sample_id=None, image_id=None):
        """See :func:`spatialexp.data.img_data.img_raster`."""
        return img_ops.img_raster(self, sample_id, image_id)

    def img_path(self, sample_id=None, image_id=None):
        """See :func:`spatialexp.data.img_data.img_path`."""
        return img_ops.img_path(self, sample_id, image_id)

    def img_url(self, sample_id=None, image_id=None):
        """See :func:`spatialexp.data.img_data.img_url`."""
        return img_ops.img_url(self, sample_id, image_id)

    def scale_factors(self, sample_id=None, image_id=None):
        """See :func:`spatialexp.data.img_data.scale_factors`."""
        return img_ops.scale_factors(self, sample_id, image_id)

    def load_img(self, sample_id=None, image_id=None, fetcher=None) -> 'SpatialExperiment':
        """See :func:`spatialexp.data.img_data.load_img`."""
        return img_ops.load_img(self, sample_id, image_id, fetcher=fetcher)

    def unload_img(self, sample_id=None, image_id=None) -> 'SpatialExperiment':
        """See :func:`spatialexp.data.img_data.unload_img`."""
        return img_ops.unload_img(self, sample_id, image_id)

    def add_img(self, image_source, scale_factor, sample_id, image_id,
                load: bool = True, fetcher=None) -> 'SpatialExperiment':
        """See :func:`spatialexp.data.img_data.add_img`."""
        return img_ops.add_img(self, image_source, scale_factor, sample_id, image_id,
                               load=load, fetcher=fetcher)

    def remove_img(self, sample_id=None, image_id=None) -> 'SpatialExperiment':
        """See :func:`spatialexp.data.img_data.remove_img`."""
        return img_ops.remove_img(self, sample_id, image_id)

    # ========== Index Helpers ==========

    def _get_cell_indices(self, cell_ids: Union[List[str], np.ndarray, pd.Index]) -> np.ndarray:
        """
        Convert observation IDs to integer indices.

        Parameters
        ----------
        cell_ids : list, array, or Index
            Observation identifiers

        Returns
        -------
        np.ndarray
            Integer indices (positions in master index)
        """
        cell_ids = pd.Index(cell_ids).astype(str)
        positions = self._cell_index.get_indexer(cell_ids)
        n_missing = int((positions < 0).sum())
        if n_missing:
            logger.warning("%d observation IDs not found", n_missing)
        return positions[positions >= 0].astype(np.int64)

    # ========== Subsetting Methods ==========

    def subset_by_cells(self,
                        cell_ids: Union[List[str], np.ndarray, pd.Index],
                        copy: bool = True) -> 'SpatialExperiment':
        """
        Create new SpatialExperiment with subset of observations.

        Images of samples that no longer have any observation are dropped.

        Parameters
        ----------
        cell_ids : list, array, or Index
            Observation IDs to keep
        copy : bool
            If True, copy metadata tables

        Returns
        -------
        SpatialExperiment
            New object with subset of observations
        """
        indices = self._get_cell_indices(cell_ids)

        if len(indices) == 0:
            raise ValueError("No valid observation IDs found")

        subset_cell_meta = self._cell_meta.iloc[indices]
        if copy:
            subset_cell_meta = subset_cell_meta.copy()

        kept_samples = pd.unique(subset_cell_meta[self.config.sample_id_col])

        return SpatialExperiment(
            expression=self._expression.subset_cells(indices),
            cell_ids=self._cell_index[indices],
            gene_names=self._gene_index,
            cell_metadata=subset_cell_meta,
            gene_metadata=self._gene_meta.copy() if copy else self._gene_meta,
            spatial_coords=self._spatial.subset(indices),
            img_data=self._img_data.subset_samples(kept_samples),
            config=self.config,
        )

    def subset_by_samples(self,
                          sample_ids: Union[str, List[str]],
                          copy: bool = True) -> 'SpatialExperiment':
        """
        Create new SpatialExperiment with the observations and images of
        some samples only.
        """
        if isinstance(sample_ids, str):
            sample_ids = [sample_ids]
        sample_ids = [str(s) for s in sample_ids]

        unknown = set(sample_ids) - set(self.sample_ids)
        if unknown:
            raise InvalidArgumentError(f"Unknown sample(s): {sorted(unknown)}")

        mask = self.sample_id.isin(sample_ids).values
        return self.subset_by_cells(self._cell_index[mask], copy=copy)

    # ========== Access Methods ==========

    def get_cells_in_sample(self, sample_id: str) -> pd.Index:
        """Observation IDs belonging to one sample."""
        mask = (self.sample_id == str(sample_id)).values
        return self._cell_index[mask]

    def get_spatial_coords(self,
                           cell_ids: Optional[Union[List[str], str]] = None,
                           image_id=None,
                           scale: bool = False,
                           as_dataframe: bool = False) -> Union[np.ndarray, pd.DataFrame]:
        """
        Get spatial coordinates for observations.

        Parameters
        ----------
        cell_ids : list or str, optional
            Observation ID(s). If None, all observations.
        image_id : str, optional
            Image whose scale factor is applied when ``scale`` is True;
            None uses the first image of each sample
        scale : bool
            Multiply each sample's coordinates by its image scale factor
        as_dataframe : bool
            If True, return as DataFrame with labels

        Returns
        -------
        np.ndarray or pd.DataFrame
            (n, 2) coordinates
        """
        coords = self._spatial.to_array().copy()

        if scale:
            sample_values = self.sample_id.values
            for sid in self.sample_ids:
                factor = img_ops.scale_factors(self, sid, image_id)
                if isinstance(factor, list):
                    raise InvalidArgumentError(
                        f"'image_id' must select one image per sample; got {len(factor)} for {sid!r}"
                    )
                coords[sample_values == sid] *= factor

        if isinstance(cell_ids, str):
            cell_ids = [cell_ids]
        if cell_ids is not None:
            indices = self._get_cell_indices(cell_ids)
        else:
            indices = np.arange(self._n_cells)
        coords = coords[indices]

        if as_dataframe:
            return pd.DataFrame(
                coords,
                index=self._cell_index[indices],
                columns=list(self.config.get_coordinate_columns()),
            )
        return coords

    # ========== Combining ==========

    @staticmethod
    def concat(experiments: Sequence['SpatialExperiment']) -> 'SpatialExperiment':
        """
        Bind experiments observation-wise (one or more samples each).

        Parameters
        ----------
        experiments : sequence of SpatialExperiment
            Objects sharing the same genes; sample IDs must not overlap

        Returns
        -------
        SpatialExperiment
        """
        experiments = list(experiments)
        if not experiments:
            raise ValueError("Nothing to concatenate")
        if len(experiments) == 1:
            return experiments[0]

        seen = set()
        for spe in experiments:
            overlap = seen & set(spe.sample_ids)
            if overlap:
                raise ConsistencyError(f"Sample IDs occur in more than one object: {sorted(overlap)}")
            seen |= set(spe.sample_ids)

        first = experiments[0]
        return SpatialExperiment(
            expression=ExpressionMatrix.concat([e.expression for e in experiments]),
            cell_ids=first.cell_index.append([e.cell_index for e in experiments[1:]]),
            gene_names=first.gene_index,
            cell_metadata=pd.concat([e.cell_meta for e in experiments]),
            gene_metadata=first.gene_meta,
            spatial_coords=SpatialData.concat([e.spatial for e in experiments]),
            img_data=ImageTable.concat([e.img_data for e in experiments]),
            config=first.config,
        )

    # ========== Summary ==========

    def summary(self) -> Dict[str, any]:
        """Get summary of the object's data."""
        return {
            'n_cells': self._n_cells,
            'n_genes': self._n_genes,
            'samples': self.sample_ids,
            'n_images': len(self._img_data),
            'n_images_loaded': self._img_data.n_loaded,
            'expression_sparse': self._expression.is_sparse,
            'memory_mb': self._estimate_memory_usage(),
        }

    def _estimate_memory_usage(self) -> float:
        """Estimate total memory usage in MB."""
        total_mb = self._expression.memory_usage_mb()
        total_mb += (self._spatial.x.nbytes + self._spatial.y.nbytes) / (1024 * 1024)
        total_mb += self._cell_meta.memory_usage(deep=True).sum() / (1024 * 1024)
        total_mb += self._gene_meta.memory_usage(deep=True).sum() / (1024 * 1024)
        total_mb += self._img_data.memory_usage_mb()
        return total_mb

    def __repr__(self) -> str:
        return (
            f"SpatialExperiment with {self._n_cells:,} observations × {self._n_genes:,} genes\n"
            f"  samples: {', '.join(self.sample_ids)}\n"
            f"  images:  {len(self._img_data)} ({self._img_data.n_loaded} loaded)"
        )

    # ========== Serialization ==========

    def to_pickle(self, filepath: str) -> None:
        """
        Save object to pickle file.

        Loaded rasters are stored too; unload images first to keep the file small.
        """
        with open(filepath, 'wb') as f:
            pickle.dump(self, f, protocol=pickle.HIGHEST_PROTOCOL)
        logger.info("Saved SpatialExperiment to %s", filepath)

    @staticmethod
    def from_pickle(filepath: str) -> 'SpatialExperiment':
        """Load SpatialExperiment object from pickle file."""
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)
        if not isinstance(obj, SpatialExperiment):
            raise TypeError(f"{filepath} does not contain a SpatialExperiment")
        return obj

    def to_anndata(self) -> 'anndata.AnnData':
        """
        Convert to AnnData.

        Coordinates go to ``obsm['spatial']`` and loaded images with their
        scale factors to ``uns['spatial'][sample_id]``.
        """
        import anndata

        uns_spatial = {}
        for row in self._img_data:
            entry = uns_spatial.setdefault(row.sample_id, {'images': {}, 'scalefactors': {}, 'sources': {}})
            if row.data.is_loaded:
                entry['images'][row.image_id] = row.data.raster
            entry['scalefactors'][row.image_id] = row.data.scale_factor
            entry['sources'][row.image_id] = row.data.path or row.data.url

        return anndata.AnnData(
            X=self._expression.get_sparse(),
            obs=self._cell_meta.copy(),
            var=self._gene_meta.copy(),
            obsm={'spatial': self._spatial.to_array()},
            uns={'spatial': uns_spatial},
        )
