
import numpy as np

from typing_extensions import Literal
from sklearn.cluster import AgglomerativeClustering

from ..exceptions import InvalidInputError


class RiskTierClusterer:
    """
    Group SOM prototypes into ordered risk tiers.

    Prototypes are clustered hierarchically (Euclidean distance, one fixed linkage) and the tree is cut into exactly
    ``num_tiers`` groups. Agglomerative cluster IDs carry no risk order, so groups are relabeled ``1..num_tiers`` by
    ascending mean of a designated ordering feature: tier 1 is the lowest-risk group, tier ``num_tiers`` the highest.

    Attributes:
        linkage (Literal['complete', 'average']): Linkage criterion. Defaults to 'complete'.
        verbosity (int): Logging level. Defaults to 1.
        node_to_tier_ (np.ndarray or None): Tier per SOM node, values in ``1..num_tiers``.
        cluster_means_ (np.ndarray or None): Mean ordering value per tier (index 0 = tier 1), non-decreasing.
    """
    def __init__(
            self,
            linkage: Literal['complete', 'average'] = 'complete',
            verbosity: int = 1,
    ):
        if linkage not in ('complete', 'average'):
            raise InvalidInputError(f"'linkage' must be 'complete' or 'average', got '{linkage}'.")
        self.linkage = linkage
        self.verbosity = verbosity

        self.node_to_tier_ = None
        self.cluster_means_ = None

    def assign_tiers(
            self,
            prototypes: np.ndarray,
            num_tiers: int,
            ordering_values: np.ndarray,
    ) -> np.ndarray:
        """
        Compute the node → tier lookup table.

        Args:
            prototypes (np.ndarray): Frozen SOM prototypes, shape (n_nodes, n_features).
            num_tiers (int): Number of risk tiers.
            ordering_values (np.ndarray): One value per prototype used to order the tiers, typically the prototype's
                coordinate on the ordering predictor.

        Returns:
            np.ndarray: Integer tier per node in ``1..num_tiers``.

        Raises:
            InvalidInputError: If ``num_tiers`` is not in ``1..n_nodes`` or the inputs do not align.
        """
        prototypes = np.asarray(prototypes, dtype=float)
        ordering_values = np.asarray(ordering_values, dtype=float).ravel()
        n_nodes = prototypes.shape[0]

        if not isinstance(num_tiers, (int, np.integer)) or not 1 <= num_tiers <= n_nodes:
            raise InvalidInputError(f"'num_tiers' must be an integer in [1, {n_nodes}], got {num_tiers!r}.")
        if ordering_values.shape[0] != n_nodes:
            raise InvalidInputError(
                f'Got {ordering_values.shape[0]} ordering values for {n_nodes} prototypes.'
            )

        if num_tiers == 1:
            cluster_ids = np.zeros(n_nodes, dtype=int)
        else:
            cluster_ids = AgglomerativeClustering(
                n_clusters=num_tiers,
                metric='euclidean',
                linkage=self.linkage,
            ).fit_predict(prototypes)

        # ### Relabel clusters by ascending mean ordering value (ties by cluster id)
        cluster_means = np.array([ordering_values[cluster_ids == c].mean() for c in range(num_tiers)])
        rank = np.argsort(cluster_means, kind='stable')
        cluster_to_tier = np.empty(num_tiers, dtype=int)
        cluster_to_tier[rank] = np.arange(1, num_tiers + 1)

        node_to_tier = cluster_to_tier[cluster_ids]
        node_to_tier.setflags(write=False)

        self.node_to_tier_ = node_to_tier
        self.cluster_means_ = cluster_means[rank]

        if self.verbosity >= 2:
            sizes = np.bincount(node_to_tier, minlength=num_tiers + 1)[1:]
            print(f'# ### Risk tiers (nodes per tier): {dict(zip(range(1, num_tiers + 1), sizes.tolist()))}')

        return node_to_tier
