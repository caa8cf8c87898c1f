"""
expression.py - Count matrix with automatic sparse handling
"""

import logging

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


class ExpressionMatrix:
    """
    Count matrix (observations × genes) with automatic sparse/dense handling.

    Features:
    - Automatic conversion to sparse when beneficial
    - Fast subsetting by observations and genes
    - Row-wise concatenation of samples
    - Handles DataFrame, ndarray, or sparse matrix input
    """

    def __init__(
        self,
        data: np.ndarray | sparse.spmatrix | pd.DataFrame,
        cell_ids: pd.Index,
        gene_names: pd.Index,
        auto_sparse: bool = True,
        sparse_threshold: float = 0.5,
    ):
        """
        Initialize expression matrix.

        Parameters
        ----------
        data : np.ndarray, sparse matrix, or pd.DataFrame
            Count data (observations × genes)
        cell_ids : pd.Index
            Observation (cell/spot) identifiers
        gene_names : pd.Index
            Gene names
        auto_sparse : bool
            Automatically convert to sparse if beneficial
        sparse_threshold : float
            Sparsity threshold for conversion (0-1)
        """
        if isinstance(data, pd.DataFrame):
            data = data.values

        if data.shape[0] != len(cell_ids):
            raise ValueError(f"Data rows ({data.shape[0]}) != cell_ids ({len(cell_ids)})")
        if data.shape[1] != len(gene_names):
            raise ValueError(f"Data cols ({data.shape[1]}) != gene_names ({len(gene_names)})")

        if auto_sparse and isinstance(data, np.ndarray) and data.size > 0:
            sparsity = 1 - np.count_nonzero(data) / data.size
            if sparsity > sparse_threshold:
                data = sparse.csr_matrix(data)
                logger.debug("Auto-converted to sparse matrix (sparsity: %.1f%%)", sparsity * 100)
        elif sparse.issparse(data):
            data = sparse.csr_matrix(data)

        self._data = data
        self._cell_ids = pd.Index(cell_ids)
        self._gene_names = pd.Index(gene_names)
        self._is_sparse = sparse.issparse(data)

    @property
    def shape(self) -> tuple[int, int]:
        """Return (n_cells, n_genes)."""
        return self._data.shape

    @property
    def is_sparse(self) -> bool:
        return self._is_sparse

    @property
    def cell_ids(self) -> pd.Index:
        return self._cell_ids

    @property
    def gene_names(self) -> pd.Index:
        return self._gene_names

    def get_dense(self) -> np.ndarray:
        """Get dense representation."""
        if self._is_sparse:
            return self._data.toarray()
        return self._data

    def get_sparse(self) -> sparse.csr_matrix:
        """Get sparse representation."""
        if not self._is_sparse:
            return sparse.csr_matrix(self._data)
        return self._data

    def subset_cells(self, indices: np.ndarray) -> "ExpressionMatrix":
        """
        Efficiently subset observations by integer indices.

        Parameters
        ----------
        indices : np.ndarray
            Integer indices of observations to keep

        Returns
        -------
        ExpressionMatrix
            New expression matrix with subset
        """
        return ExpressionMatrix(
            data=self._data[indices, :],
            cell_ids=self._cell_ids[indices],
            gene_names=self._gene_names,
            auto_sparse=False,  # Already in correct format
        )

    def subset_genes(self, indices: np.ndarray) -> "ExpressionMatrix":
        """Efficiently subset genes by integer indices."""
        return ExpressionMatrix(
            data=self._data[:, indices],
            cell_ids=self._cell_ids,
            gene_names=self._gene_names[indices],
            auto_sparse=False,
        )

    def with_cell_ids(self, cell_ids: pd.Index) -> "ExpressionMatrix":
        """Same data under new observation identifiers."""
        return ExpressionMatrix(
            data=self._data, cell_ids=pd.Index(cell_ids), gene_names=self._gene_names, auto_sparse=False
        )

    @classmethod
    def concat(cls, matrices: list["ExpressionMatrix"]) -> "ExpressionMatrix":
        """
        Stack matrices by observations.

        All matrices must share the same genes, in the same order.
        """
        if not matrices:
            raise ValueError("Nothing to concatenate")

        genes = matrices[0].gene_names
        for m in matrices[1:]:
            if not m.gene_names.equals(genes):
                raise ValueError("Cannot concatenate expression matrices with different genes")

        if any(m.is_sparse for m in matrices):
            data = sparse.vstack([m.get_sparse() for m in matrices], format="csr")
        else:
            data = np.vstack([m.get_dense() for m in matrices])

        cell_ids = matrices[0].cell_ids.append([m.cell_ids for m in matrices[1:]])
        return cls(data=data, cell_ids=cell_ids, gene_names=genes, auto_sparse=False)

    def __getitem__(self, key):
        """Support array-like indexing."""
        return self._data[key]

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert to DataFrame (for display/export only).

        Warning: This creates a dense representation in memory.
        """
        return pd.DataFrame(self.get_dense(), index=self._cell_ids, columns=self._gene_names)

    def memory_usage_mb(self) -> float:
        """Estimate memory usage in MB."""
        if self._is_sparse:
            total_bytes = self._data.data.nbytes + self._data.indices.nbytes + self._data.indptr.nbytes
        else:
            total_bytes = self._data.nbytes

        return total_bytes / (1024 * 1024)
