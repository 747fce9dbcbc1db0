"""2D layout of entries for the graph view.

Places every entry at a finite (x, y) so that semantically close highlights
land near each other. Three or more embedded entries go through a
UMAP-style projection:

1. Exact k nearest neighbors on cosine distance
2. Fuzzy membership per point: rho is the distance to the nearest
   neighbor, sigma is found by binary search so memberships sum to log2(k)
3. Symmetrize with a probabilistic OR: w + w^T - w * w^T
4. Spectral initialization from the normalized graph Laplacian
   (random initialization when that fails or the graph is large)
5. SGD with negative sampling on the fuzzy cross-entropy

Small inputs get fixed placements, and a failing projection falls back to
a circle. ``project`` never raises; callers cap the input at
``max_entries``.
"""

import math
from collections import Counter
from typing import Optional, Sequence

import numpy as np

from commonplace.config.schema import LayoutConfig
from commonplace.core.errors import ProjectionDegenerateError
from commonplace.entities import Entry, LayoutStrategy, PositionedEntry
from commonplace.observability.logging import get_logger

logger = get_logger(__name__)

# Dense eigendecomposition above this size is too slow for an interactive call
_SPECTRAL_INIT_LIMIT = 1000
_KNN_BLOCK_SIZE = 512
_GRADIENT_CLIP = 4.0


def circle_positions(count: int, radius: float) -> list[tuple[float, float]]:
    """Evenly spaced points on a circle around the origin, starting at (radius, 0)."""
    return [
        (radius * math.cos(2 * math.pi * i / count), radius * math.sin(2 * math.pi * i / count))
        for i in range(count)
    ]


def fit_ab(min_dist: float, spread: float) -> tuple[float, float]:
    """Fit the low-dimensional kernel 1 / (1 + a * d^(2b)).

    The target curve is 1 up to ``min_dist`` and decays as
    exp(-(d - min_dist) / spread) beyond it. Least squares over a grid of
    (a, b) keeps this numpy-only.
    """
    d = np.linspace(0, spread * 3, 300)
    target = np.where(d < min_dist, 1.0, np.exp(-(d - min_dist) / spread))

    best = (1.0, 1.0)
    best_err = np.inf
    for b in np.linspace(0.3, 2.0, 69):
        powered = d ** (2 * b)
        for a in np.logspace(-2, 1, 121):
            err = np.sum((1.0 / (1.0 + a * powered) - target) ** 2)
            if err < best_err:
                best_err = err
                best = (float(a), float(b))
    return best


class LayoutProjector:
    """Projects entry embeddings to 2D. Holds no state between calls."""

    def __init__(self, config: Optional[LayoutConfig] = None) -> None:
        self.config = config or LayoutConfig()
        self._ab: Optional[tuple[float, float]] = None

    @property
    def ab(self) -> tuple[float, float]:
        if self._ab is None:
            self._ab = fit_ab(self.config.min_dist, self.config.spread)
        return self._ab

    @staticmethod
    def choose_strategy(n_valid: int) -> LayoutStrategy:
        """Placement strategy for the given number of embedded entries."""
        if n_valid <= 0:
            return LayoutStrategy.EMPTY
        if n_valid == 1:
            return LayoutStrategy.SINGLE
        if n_valid == 2:
            return LayoutStrategy.PAIR
        return LayoutStrategy.MANIFOLD

    def n_neighbors(self, n: int) -> int:
        k = int(math.floor(self.config.neighbor_fraction * n))
        k = min(self.config.max_neighbors, max(self.config.min_neighbors, k))
        return max(1, min(k, n - 1))

    def n_epochs(self, n: int) -> int:
        return min(self.config.max_epochs, max(self.config.min_epochs, 2 * n))

    @staticmethod
    def _as_vector(embedding: object) -> Optional[list[float]]:
        if embedding is None or isinstance(embedding, (str, bytes)):
            return None
        try:
            vector = [float(v) for v in embedding]
        except (TypeError, ValueError):
            return None
        if not vector or not all(math.isfinite(v) for v in vector):
            return None
        # A zero vector has no direction for cosine distance
        if not any(vector):
            return None
        return vector

    def _valid_vectors(
        self, entries: Sequence[Entry], dimension: Optional[int]
    ) -> dict[int, list[float]]:
        """Map input position -> embedding, for entries with a usable embedding."""
        vectors = {}
        for i, entry in enumerate(entries):
            vector = self._as_vector(getattr(entry, "embedding", None))
            if vector is not None:
                vectors[i] = vector

        if dimension is None:
            lengths = Counter(len(v) for v in vectors.values())
            if not lengths:
                return {}
            dimension = lengths.most_common(1)[0][0]

        return {i: v for i, v in vectors.items() if len(v) == dimension}

    def project(
        self, entries: Sequence[Entry], dimension: Optional[int] = None
    ) -> list[PositionedEntry]:
        """Give every entry a 2D coordinate, in input order.

        Args:
            entries: Entries to place; embeddings are read from each entry
            dimension: Expected embedding length, or None to infer the most
                common one

        Returns:
            One positioned entry per input entry
        """
        if not entries:
            return []

        vectors = self._valid_vectors(entries, dimension)
        valid_positions = list(vectors)
        strategy = self.choose_strategy(len(valid_positions))

        coords: dict[int, tuple[float, float]] = {}
        if strategy == LayoutStrategy.SINGLE:
            coords[valid_positions[0]] = (0.0, 0.0)
        elif strategy == LayoutStrategy.PAIR:
            coords[valid_positions[0]] = (-1.0, 0.0)
            coords[valid_positions[1]] = (1.0, 0.0)
        elif strategy == LayoutStrategy.MANIFOLD:
            matrix = np.asarray([vectors[i] for i in valid_positions], dtype=np.float64)
            try:
                embedded = self._manifold(matrix)
            except Exception as e:
                logger.warning(
                    "layout_fallback",
                    reason=str(e),
                    error_type=type(e).__name__,
                    entries=len(valid_positions),
                )
                strategy = LayoutStrategy.CIRCLE
                for i, point in zip(valid_positions, circle_positions(len(valid_positions), 1.0)):
                    coords[i] = point
            else:
                for i, (x, y) in zip(valid_positions, embedded):
                    coords[i] = (float(x), float(y))

        invalid_positions = [i for i in range(len(entries)) if i not in vectors]
        if len(entries) == 1 and invalid_positions:
            # A lone entry sits at the origin whatever its embedding
            return [
                PositionedEntry(entry=entries[0], x=0.0, y=0.0, strategy=LayoutStrategy.SINGLE)
            ]
        unembedded = dict(
            zip(
                invalid_positions,
                circle_positions(len(invalid_positions), self.config.fallback_radius)
                if invalid_positions
                else [],
            )
        )

        positioned = []
        for i, entry in enumerate(entries):
            if i in coords:
                x, y = coords[i]
                positioned.append(PositionedEntry(entry=entry, x=x, y=y, strategy=strategy))
            else:
                x, y = unembedded[i]
                positioned.append(
                    PositionedEntry(entry=entry, x=x, y=y, strategy=LayoutStrategy.UNEMBEDDED)
                )

        logger.debug(
            "layout_projected",
            entries=len(entries),
            embedded=len(valid_positions),
            strategy=strategy.value,
        )
        return positioned

    # Manifold projection

    def _manifold(self, data: np.ndarray) -> np.ndarray:
        n = data.shape[0]
        k = self.n_neighbors(n)
        rng = np.random.default_rng(self.config.random_state)

        knn_indices, knn_distances = self._knn(data, k)
        heads, tails, weights = self._fuzzy_graph(knn_indices, knn_distances)
        if len(weights) == 0:
            raise ProjectionDegenerateError("Neighbor graph has no edges")

        layout = self._initialize(n, heads, tails, weights, rng)
        layout = self._optimize(layout, heads, tails, weights, self.n_epochs(n), rng)

        if not np.all(np.isfinite(layout)):
            raise ProjectionDegenerateError("Projection produced non-finite coordinates")
        return layout

    @staticmethod
    def _knn(data: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        """Exact k nearest neighbors by cosine distance, self excluded."""
        norms = np.linalg.norm(data, axis=1, keepdims=True)
        if np.any(norms == 0):
            raise ProjectionDegenerateError("Zero-length embedding has no direction")
        unit = data / norms

        n = unit.shape[0]
        indices = np.zeros((n, k), dtype=np.int64)
        distances = np.zeros((n, k))
        for start in range(0, n, _KNN_BLOCK_SIZE):
            stop = min(start + _KNN_BLOCK_SIZE, n)
            block = np.clip(1.0 - unit[start:stop] @ unit.T, 0.0, 2.0)
            block[np.arange(stop - start), np.arange(start, stop)] = np.inf
            nearest = np.argsort(block, axis=1, kind="stable")[:, :k]
            indices[start:stop] = nearest
            distances[start:stop] = np.take_along_axis(block, nearest, axis=1)
        return indices, distances

    @staticmethod
    def _fuzzy_graph(
        knn_indices: np.ndarray, knn_distances: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Symmetrized fuzzy simplicial set as an edge list (i < j)."""
        n, k = knn_indices.shape
        target = math.log2(k) if k > 1 else 1.0

        rho = knn_distances[:, 0]
        shifted = np.maximum(knn_distances - rho[:, None], 0.0)

        lo = np.full(n, 1e-3)
        hi = np.full(n, 100.0)
        for _ in range(64):
            mid = (lo + hi) / 2
            total = np.exp(-shifted / mid[:, None]).sum(axis=1)
            too_big = total > target
            hi = np.where(too_big, mid, hi)
            lo = np.where(too_big, lo, mid)
        sigma = (lo + hi) / 2

        memberships = np.exp(-shifted / (sigma[:, None] + 1e-10))

        directed: dict[tuple[int, int], float] = {}
        for i in range(n):
            for slot in range(k):
                directed[(i, int(knn_indices[i, slot]))] = float(memberships[i, slot])

        symmetric: dict[tuple[int, int], float] = {}
        for (i, j), w in directed.items():
            key = (i, j) if i < j else (j, i)
            if key in symmetric:
                continue
            w_rev = directed.get((j, i), 0.0)
            combined = w + w_rev - w * w_rev
            if combined > 0:
                symmetric[key] = combined

        if not symmetric:
            return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0)
        pairs = np.asarray(list(symmetric), dtype=np.int64)
        return pairs[:, 0], pairs[:, 1], np.asarray(list(symmetric.values()))

    def _initialize(
        self,
        n: int,
        heads: np.ndarray,
        tails: np.ndarray,
        weights: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        if n <= _SPECTRAL_INIT_LIMIT and n > 3:
            try:
                return self._spectral_init(n, heads, tails, weights, rng)
            except (np.linalg.LinAlgError, ProjectionDegenerateError) as e:
                logger.debug("spectral_init_failed", error=str(e))
        return rng.uniform(-10.0, 10.0, size=(n, 2))

    @staticmethod
    def _spectral_init(
        n: int,
        heads: np.ndarray,
        tails: np.ndarray,
        weights: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        graph = np.zeros((n, n))
        graph[heads, tails] = weights
        graph[tails, heads] = weights

        degree = graph.sum(axis=1)
        inv_sqrt = 1.0 / np.sqrt(degree + 1e-10)
        laplacian = np.eye(n) - inv_sqrt[:, None] * graph * inv_sqrt[None, :]

        _, eigenvectors = np.linalg.eigh(laplacian)
        init = eigenvectors[:, 1:3]
        spread = np.abs(init).max()
        if not np.isfinite(spread) or spread == 0:
            raise ProjectionDegenerateError("Degenerate spectral embedding")

        # Scale into [-10, 10] and jitter so coincident points separate
        init = 10.0 * init / spread
        return init + rng.normal(scale=1e-4, size=init.shape)

    def _optimize(
        self,
        layout: np.ndarray,
        heads: np.ndarray,
        tails: np.ndarray,
        weights: np.ndarray,
        n_epochs: int,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """SGD on the fuzzy cross-entropy, one vectorized sweep per epoch."""
        a, b = self.ab
        n = layout.shape[0]
        sample_probability = weights / weights.max()
        negatives = self.config.negative_sample_rate

        for epoch in range(n_epochs):
            lr = self.config.learning_rate * (1.0 - epoch / n_epochs)

            active = rng.random(len(weights)) < sample_probability
            i = heads[active]
            j = tails[active]
            if len(i) == 0:
                continue

            diff = layout[i] - layout[j]
            dist_sq = np.sum(diff**2, axis=1)
            safe = np.maximum(dist_sq, 1e-10)
            coeff = np.where(
                dist_sq > 0,
                -2.0 * a * b * safe ** (b - 1.0) / (1.0 + a * safe**b),
                0.0,
            )
            grad = np.clip(coeff[:, None] * diff, -_GRADIENT_CLIP, _GRADIENT_CLIP)
            np.add.at(layout, i, lr * grad)
            np.add.at(layout, j, -lr * grad)

            if negatives == 0:
                continue
            neg_i = np.repeat(i, negatives)
            neg_k = rng.integers(0, n, size=len(neg_i))
            keep = neg_k != neg_i
            neg_i = neg_i[keep]
            neg_k = neg_k[keep]

            diff = layout[neg_i] - layout[neg_k]
            dist_sq = np.sum(diff**2, axis=1)
            coeff = 2.0 * b / ((0.001 + dist_sq) * (1.0 + a * np.maximum(dist_sq, 1e-10) ** b))
            grad = np.where(
                dist_sq[:, None] > 0,
                np.clip(coeff[:, None] * diff, -_GRADIENT_CLIP, _GRADIENT_CLIP),
                _GRADIENT_CLIP,
            )
            np.add.at(layout, neg_i, lr * grad)

        return layout
