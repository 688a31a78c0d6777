import math
import logging
from typing import Callable, Dict, List, Sequence, Set, Tuple

import networkx as nx

from .config import CLUSTER_RADIUS_PX, CLUSTER_ZOOM_THRESHOLD
from .models import Memory, Cluster, MemoryItem, ClusterItem, DisplayItem

logger = logging.getLogger(__name__)

ProjectFn = Callable[[float, float], Tuple[float, float]]

def screen_distance(point1: Tuple[float, float], point2: Tuple[float, float]) -> float:
    return math.sqrt((point1[0] - point2[0]) ** 2 + (point1[1] - point2[1]) ** 2)

def cluster_centroid(members: Sequence[Memory]) -> Tuple[float, float]:
    """Arithmetic mean of member coordinates."""
    lat = sum(m.lat for m in members) / len(members)
    lng = sum(m.lng for m in members) / len(members)
    return lat, lng

def build_cluster(members: Sequence[Memory], representative: Memory) -> Cluster:
    lat, lng = cluster_centroid(members)
    return Cluster(
        id=f"cluster-{representative.id}",
        lat=lat,
        lng=lng,
        members=tuple(members),
        representative=representative,
    )

def seed_clusters(memories: Sequence[Memory], project: ProjectFn,
                  radius_px: float = CLUSTER_RADIUS_PX) -> List[Cluster]:
    # Newest memories seed first; members are only guaranteed close to their seed
    ordered = sorted(memories, key=lambda m: m.id, reverse=True)
    points: Dict[int, Tuple[float, float]] = {m.id: project(m.lat, m.lng) for m in ordered}

    clusters = []
    consumed: Set[int] = set()

    for seed in ordered:
        if seed.id in consumed:
            continue

        members = [seed]
        for other in ordered:
            if other.id == seed.id or other.id in consumed:
                continue
            if screen_distance(points[seed.id], points[other.id]) < radius_px:
                members.append(other)

        if len(members) > 1:
            consumed.update(m.id for m in members)
            clusters.append(build_cluster(members, seed))

    return clusters

def transitive_clusters(memories: Sequence[Memory], project: ProjectFn,
                        radius_px: float = CLUSTER_RADIUS_PX) -> List[Cluster]:
    """Chains of mutually close memories merge into one cluster."""
    ordered = sorted(memories, key=lambda m: m.id, reverse=True)
    points = {m.id: project(m.lat, m.lng) for m in ordered}
    by_id = {m.id: m for m in ordered}

    G = nx.Graph()
    G.add_nodes_from(by_id)
    for i, m1 in enumerate(ordered):
        for m2 in ordered[i + 1:]:
            if screen_distance(points[m1.id], points[m2.id]) < radius_px:
                G.add_edge(m1.id, m2.id)

    clusters = []
    for component in nx.connected_components(G):
        if len(component) < 2:
            continue
        members = sorted((by_id[i] for i in component), key=lambda m: m.id, reverse=True)
        clusters.append(build_cluster(members, members[0]))

    clusters.sort(key=lambda c: c.representative.id, reverse=True)
    return clusters

def compute_display_items(memories: Sequence[Memory], project: ProjectFn, zoom: float,
                          radius_px: float = CLUSTER_RADIUS_PX,
                          zoom_threshold: float = CLUSTER_ZOOM_THRESHOLD,
                          transitive: bool = False) -> List[DisplayItem]:
    """
    Map the current memories and viewport to what should be drawn.

    Args:
        memories: Memories on the active map
        project: Converts (lat, lng) to container pixels for the current viewport
        zoom: Current map zoom
        radius_px: Screen distance below which memories group together
        zoom_threshold: Above this zoom nothing is clustered
        transitive: Merge chains of close memories instead of grouping around a seed

    Returns:
        Clusters first, then every unclustered memory in its original order.
    """
    if zoom > zoom_threshold:
        return [MemoryItem(m) for m in memories]

    if transitive:
        clusters = transitive_clusters(memories, project, radius_px)
    else:
        clusters = seed_clusters(memories, project, radius_px)

    clustered_ids = {m.id for c in clusters for m in c.members}
    items: List[DisplayItem] = [ClusterItem(c) for c in clusters]
    items.extend(MemoryItem(m) for m in memories if m.id not in clustered_ids)

    logger.debug(f"Display list: {len(memories)} memories -> {len(clusters)} clusters, "
                 f"{len(items) - len(clusters)} standalone")
    return items

def clustered_memory_ids(items: Sequence[DisplayItem]) -> Set[int]:
    return {m.id for item in items if isinstance(item, ClusterItem)
            for m in item.cluster.members}
