from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy import stats
from sklearn.cluster import KMeans
from sklearn.preprocessing import StandardScaler

from .config import (
    CodebookTrainerConfig,
    DistanceMetric,
    GaussianEliminatorParams,
    KMeansEliminatorParams,
    KMeansStrategy,
)
from .constants import EPSILON
from .errors import EliminationWarning
from .types import MappingTable, StageSummary

logger = logging.getLogger(__name__)

GAUSSIAN_STAGE = "gaussian"
KMEANS_STAGE = "kmeans"
SIDES: tuple[str, ...] = ("source", "target")


@dataclass(frozen=True)
class ChannelBounds:
    channel: str
    side: str
    lower: np.ndarray
    upper: np.ndarray


@dataclass(frozen=True)
class GaussianThresholds:
    bounds: tuple[ChannelBounds, ...]
    too_similar_threshold: float | None = None


class GaussianEliminator:
    """Drops mappings with any enabled channel value outside mean +/- k * std.

    Bounds are fitted per channel, per dimension and per side. F0 statistics only
    consider mappings voiced on both sides, and the F0 check only applies to them.
    """

    def __init__(self, params: GaussianEliminatorParams):
        self.params = params

    @staticmethod
    def _considered(table: MappingTable, channel: str) -> np.ndarray:
        if channel == "f0":
            return (table.channel("f0", "source")[:, 0] > 0.0) & (table.channel("f0", "target")[:, 0] > 0.0)
        return np.ones(len(table), dtype=bool)

    def fit(self, table: MappingTable) -> GaussianThresholds:
        bounds: list[ChannelBounds] = []
        for channel in self.params.enabled_channels():
            multiplier = self.params.deviations.for_channel(channel)
            considered = self._considered(table, channel)
            if not np.any(considered):
                logger.debug("gaussian: no mappings to fit for channel %s", channel)
                continue
            for side in SIDES:
                values = table.channel(channel, side)[considered]
                mean = np.mean(values, axis=0)
                spread = multiplier * np.std(values, axis=0)
                slack = 1.0e-9 * np.maximum(np.abs(mean), 1.0)
                bounds.append(
                    ChannelBounds(
                        channel=channel,
                        side=side,
                        lower=mean - spread - slack,
                        upper=mean + spread + slack,
                    )
                )
        threshold = self.params.too_similar_threshold if self.params.eliminate_too_similar_lsf else None
        return GaussianThresholds(bounds=tuple(bounds), too_similar_threshold=threshold)

    def apply(self, table: MappingTable, thresholds: GaussianThresholds) -> np.ndarray:
        keep = np.ones(len(table), dtype=bool)
        for bound in thresholds.bounds:
            values = table.channel(bound.channel, bound.side)
            outside = np.any((values < bound.lower) | (values > bound.upper), axis=1)
            keep &= ~(outside & self._considered(table, bound.channel))

        if thresholds.too_similar_threshold is not None:
            distance = np.linalg.norm(table.channel("lsf", "target") - table.channel("lsf", "source"), axis=1)
            keep &= distance >= thresholds.too_similar_threshold
        return keep

    def eliminate(
        self,
        table: MappingTable,
        thresholds: GaussianThresholds | None = None,
    ) -> tuple[np.ndarray, GaussianThresholds]:
        if thresholds is None:
            thresholds = self.fit(table)
        return self.apply(table, thresholds), thresholds


@dataclass(frozen=True)
class Clustering:
    labels: np.ndarray
    centers: np.ndarray
    variances: np.ndarray
    global_variance: np.ndarray

    @property
    def n_clusters(self) -> int:
        return int(self.centers.shape[0])


class KMeansClusterer:
    """Seeded scikit-learn K-means plus the distance used by the eliminators."""

    def __init__(self, params: KMeansEliminatorParams, random_seed: int):
        self.params = params
        self.random_seed = int(random_seed)

    def fit(self, data: np.ndarray, n_clusters: int, seed_offset: int = 0) -> Clustering:
        data = np.asarray(data, dtype=np.float64)
        count = data.shape[0]
        if count == 0:
            raise ValueError("cannot cluster an empty set of mappings")
        distinct = int(np.unique(data, axis=0).shape[0])
        k = min(int(n_clusters), distinct)
        if k < n_clusters:
            logger.info(
                "kmeans: only %d distinct of %d mappings, reducing cluster count from %d",
                distinct,
                count,
                n_clusters,
            )

        global_variance = np.maximum(np.var(data, axis=0), EPSILON)
        fit_data = data
        if self.params.distance_metric is DistanceMetric.NORMALIZED_EUCLIDEAN:
            fit_data = StandardScaler().fit_transform(data)

        model = KMeans(
            n_clusters=k,
            n_init=self.params.n_init,
            max_iter=self.params.max_iter,
            random_state=self.random_seed + seed_offset,
        )
        labels = model.fit_predict(fit_data)

        centers = np.empty((k, data.shape[1]), dtype=np.float64)
        variances = np.empty_like(centers)
        for cluster in range(k):
            members = data[labels == cluster]
            if members.shape[0] == 0:
                centers[cluster] = np.mean(data, axis=0)
                variances[cluster] = global_variance
                continue
            centers[cluster] = np.mean(members, axis=0)
            spread = np.var(members, axis=0)
            variances[cluster] = np.where(spread > EPSILON, spread, global_variance)

        return Clustering(labels=labels, centers=centers, variances=variances, global_variance=global_variance)

    def distances(self, data: np.ndarray, clustering: Clustering) -> np.ndarray:
        data = np.atleast_2d(np.asarray(data, dtype=np.float64))
        result = np.empty((data.shape[0], clustering.n_clusters), dtype=np.float64)
        for cluster in range(clustering.n_clusters):
            diff = data - clustering.centers[cluster]
            if self.params.distance_metric is DistanceMetric.EUCLIDEAN:
                weights = 1.0
            elif self.params.global_variance:
                weights = 1.0 / clustering.global_variance
            else:
                weights = 1.0 / clustering.variances[cluster]
            result[:, cluster] = np.sqrt(np.sum(diff * diff * weights, axis=1))
        return result

    def assign(self, data: np.ndarray, clustering: Clustering) -> np.ndarray:
        return np.argmin(self.distances(data, clustering), axis=1)


StrategyFn = Callable[["KMeansEliminator", MappingTable, Sequence[str], int, float, int], tuple[np.ndarray, int]]


class KMeansEliminator:
    """Clustering-consistency elimination; the strategy is chosen by configuration."""

    def __init__(self, params: KMeansEliminatorParams, random_seed: int):
        self.params = params
        self.clusterer = KMeansClusterer(params, random_seed)

    def eliminate(self, table: MappingTable) -> tuple[np.ndarray, int]:
        """Return a keep-mask over ``table`` and the number of top-level clusters used."""
        eliminated = np.zeros(len(table), dtype=bool)
        if len(table) == 0:
            return ~eliminated, 0

        channels = self.params.enabled_channels()
        if self.params.separate_clustering:
            groups: list[tuple[str | None, tuple[str, ...]]] = [(channel, (channel,)) for channel in channels]
        else:
            groups = [(None, channels)]

        strategy = self._STRATEGIES[self.params.strategy]
        clusters = 0
        for group_index, (key, group) in enumerate(groups):
            dropped, used = strategy(
                self,
                table,
                group,
                self.params.clusters_for(key),
                self.params.tolerance_for(key),
                group_index * 7919,
            )
            logger.debug("kmeans %s on %s: %d eliminated", self.params.strategy.value, key or "joint", int(dropped.sum()))
            eliminated |= dropped
            clusters += used
        return ~eliminated, clusters

    def _least_likely(
        self,
        table: MappingTable,
        channels: Sequence[str],
        n_clusters: int,
        tolerance: float,
        seed_offset: int,
    ) -> tuple[np.ndarray, int]:
        data = np.concatenate([table.channels(channels, "source"), table.channels(channels, "target")], axis=1)
        clustering = self.clusterer.fit(data, n_clusters, seed_offset)

        eliminated = np.zeros(len(table), dtype=bool)
        for cluster in range(clustering.n_clusters):
            members = np.flatnonzero(clustering.labels == cluster)
            drop = int(np.floor(self.params.elimination_likelihood * members.size))
            if drop == 0:
                continue
            # diagonal Gaussian, summed over dimensions
            log_likelihood = stats.norm.logpdf(
                data[members],
                loc=clustering.centers[cluster],
                scale=np.sqrt(clustering.variances[cluster]),
            ).sum(axis=1)
            order = np.argsort(log_likelihood, kind="stable")
            eliminated[members[order[:drop]]] = True
        return eliminated, clustering.n_clusters

    def _inconsistent(
        self,
        from_data: np.ndarray,
        to_data: np.ndarray,
        from_clustering: Clustering,
        to_clustering: Clustering,
        tolerance: float,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Flag mappings that land outside the neighbourhood implied by their cluster.

        For every cluster ``c`` on the ``from`` side, the implied neighbourhood is the
        ``to`` centre nearest to the mean ``to`` vector of c's members. A member whose
        own ``to`` cluster differs is flagged when its distance to the implied centre
        exceeds ``(1 + tolerance)`` times its distance to its own centre.
        """
        from_assign = self.clusterer.assign(from_data, from_clustering)
        to_distances = self.clusterer.distances(to_data, to_clustering)
        to_assign = np.argmin(to_distances, axis=1)

        flagged = np.zeros(from_data.shape[0], dtype=bool)
        for cluster in np.unique(from_assign):
            members = np.flatnonzero(from_assign == cluster)
            mapped_mean = np.mean(to_data[members], axis=0)
            implied = int(self.clusterer.assign(mapped_mean, to_clustering)[0])
            own = to_distances[members, to_assign[members]]
            to_implied = to_distances[members, implied]
            flagged[members] = (to_assign[members] != implied) & (to_implied > (1.0 + tolerance) * own)
        return flagged, from_assign

    def _mismatches(
        self,
        source: np.ndarray,
        target: np.ndarray,
        n_clusters: int,
        tolerance: float,
        seed_offset: int,
    ) -> tuple[np.ndarray, np.ndarray, int]:
        source_clustering = self.clusterer.fit(source, n_clusters, seed_offset)
        target_clustering = self.clusterer.fit(target, n_clusters, seed_offset + 1)
        forward, source_assign = self._inconsistent(source, target, source_clustering, target_clustering, tolerance)
        backward, _ = self._inconsistent(target, source, target_clustering, source_clustering, tolerance)
        return forward | backward, source_assign, source_clustering.n_clusters

    def _mean_distance_mismatch(
        self,
        table: MappingTable,
        channels: Sequence[str],
        n_clusters: int,
        tolerance: float,
        seed_offset: int,
    ) -> tuple[np.ndarray, int]:
        eliminated, _, used = self._mismatches(
            table.channels(channels, "source"),
            table.channels(channels, "target"),
            n_clusters,
            tolerance,
            seed_offset,
        )
        return eliminated, used

    def _refine(
        self,
        source: np.ndarray,
        target: np.ndarray,
        n_clusters: int,
        tolerance: float,
        seed_offset: int,
        depth: int,
    ) -> tuple[np.ndarray, int]:
        eliminated, assign, used = self._mismatches(source, target, n_clusters, tolerance, seed_offset)
        if depth >= self.params.subcluster_depth:
            return eliminated, used

        minimum = max(self.params.min_subcluster_size, self.params.subcluster_count)
        for cluster in range(used):
            members = np.flatnonzero((assign == cluster) & ~eliminated)
            if members.size < minimum:
                continue
            dropped, _ = self._refine(
                source[members],
                target[members],
                self.params.subcluster_count,
                tolerance,
                seed_offset * 31 + (cluster + 1) * 2,
                depth + 1,
            )
            eliminated[members[dropped]] = True
        return eliminated, used

    def _subcluster_mean_distance(
        self,
        table: MappingTable,
        channels: Sequence[str],
        n_clusters: int,
        tolerance: float,
        seed_offset: int,
    ) -> tuple[np.ndarray, int]:
        return self._refine(
            table.channels(channels, "source"),
            table.channels(channels, "target"),
            n_clusters,
            tolerance,
            seed_offset,
            depth=0,
        )

    _STRATEGIES: dict[KMeansStrategy, StrategyFn] = {
        KMeansStrategy.LEAST_LIKELY: _least_likely,
        KMeansStrategy.MEAN_DISTANCE_MISMATCH: _mean_distance_mismatch,
        KMeansStrategy.SUBCLUSTER_MEAN_DISTANCE: _subcluster_mean_distance,
    }


@dataclass(frozen=True)
class EliminationResult:
    keep: np.ndarray
    stages: tuple[StageSummary, ...]
    gaussian_thresholds: GaussianThresholds | None = None

    @property
    def remaining(self) -> int:
        return int(np.count_nonzero(self.keep))


class OutlierEliminationPipeline:
    def __init__(
        self,
        gaussian_params: GaussianEliminatorParams,
        kmeans_params: KMeansEliminatorParams,
        random_seed: int = 1337,
    ):
        self.gaussian_params = gaussian_params
        self.kmeans_params = kmeans_params
        self.gaussian = GaussianEliminator(gaussian_params)
        self.kmeans = KMeansEliminator(kmeans_params, random_seed)

    @classmethod
    def from_config(cls, config: CodebookTrainerConfig) -> "OutlierEliminationPipeline":
        return cls(config.gaussian, config.kmeans, config.random_seed)

    def run(self, table: MappingTable) -> EliminationResult:
        keep = np.ones(len(table), dtype=bool)
        stages: list[StageSummary] = []
        thresholds: GaussianThresholds | None = None

        if self.gaussian_params.active:
            stage_keep, thresholds = self.gaussian.eliminate(table)
            summary = StageSummary(
                name=GAUSSIAN_STAGE,
                input_count=len(table),
                eliminated=int(np.count_nonzero(~stage_keep)),
            )
            keep &= stage_keep
            stages.append(summary)
            self._report(summary)

        if self.kmeans_params.active:
            survivors = np.flatnonzero(keep)
            if survivors.size == 0:
                logger.info("kmeans stage skipped: no mappings left")
                stages.append(StageSummary(name=KMEANS_STAGE, input_count=0, eliminated=0))
            else:
                stage_keep, clusters = self.kmeans.eliminate(table.subset(keep))
                keep[survivors[~stage_keep]] = False
                summary = StageSummary(
                    name=KMEANS_STAGE,
                    input_count=int(survivors.size),
                    eliminated=int(np.count_nonzero(~stage_keep)),
                    clusters=clusters,
                )
                stages.append(summary)
                self._report(summary)

        return EliminationResult(keep=keep, stages=tuple(stages), gaussian_thresholds=thresholds)

    @staticmethod
    def _report(summary: StageSummary) -> None:
        logger.info(
            "%s stage: %d -> %d mappings (%d eliminated)",
            summary.name,
            summary.input_count,
            summary.remaining,
            summary.eliminated,
        )
        if summary.input_count > 0 and summary.remaining == 0:
            message = f"{summary.name} stage eliminated all {summary.input_count} mappings"
            logger.warning(message)
            warnings.warn(message, EliminationWarning, stacklevel=3)
