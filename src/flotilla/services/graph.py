"""プラットフォーム間の依存グラフ。"""

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from flotilla.models.errors import (
    CyclicDependencyError,
    PlatformNotFoundError,
    SelfDependencyError,
    UnknownDependentError,
)
from flotilla.models.platform import Platform


@dataclass
class GraphNode:
    """プラットフォームと、その前方辺（dependents）・逆辺（dependencies）。"""

    platform: Platform
    dependents: list[str]
    dependencies: list[str] = field(default_factory=list)


class DependencyGraph:
    """宣言されたdependentsから依存関係を導出し、再ビルド対象を求める。

    dependencies は全プラットフォームのdependentsを走査して得られる逆辺であり、
    dependents と常に逆関係になる。
    """

    def __init__(self, nodes: dict[str, GraphNode]) -> None:
        self._nodes = nodes

    @classmethod
    def build(cls, platforms: Iterable[Platform]) -> "DependencyGraph":
        """プラットフォーム一覧からグラフを構築する。

        Raises:
            SelfDependencyError: 自分自身をdependentに指定している場合。
            UnknownDependentError: 未登録のプラットフォームをdependentに指定している場合。
        """
        nodes = {p.id: GraphNode(platform=p, dependents=list(p.dependents)) for p in platforms}

        for platform_id, node in nodes.items():
            for dependent_id in node.dependents:
                if dependent_id == platform_id:
                    raise SelfDependencyError(platform_id)
                if dependent_id not in nodes:
                    raise UnknownDependentError(platform_id, dependent_id)

        for platform_id, node in nodes.items():
            node.dependencies = [other_id for other_id, other in nodes.items() if platform_id in other.dependents]

        graph = cls(nodes)
        # 全体が非循環であることを起動時に確認する
        graph.topological_order(nodes)
        return graph

    def __contains__(self, platform_id: object) -> bool:
        return platform_id in self._nodes

    def node(self, platform_id: str) -> GraphNode:
        node = self._nodes.get(platform_id)
        if node is None:
            raise PlatformNotFoundError(platform_id)
        return node

    def dependents(self, platform_id: str) -> list[str]:
        return list(self.node(platform_id).dependents)

    def dependencies(self, platform_id: str) -> list[str]:
        return list(self.node(platform_id).dependencies)

    def reachable_dependents(self, platform_id: str) -> list[str]:
        """platform_idから幅優先で到達できるプラットフォームを返す（起点を含む）。

        訪問済み集合により、ダイヤモンド型の依存でも各プラットフォームは1回だけ現れる。
        """
        self.node(platform_id)
        visited: set[str] = {platform_id}
        order: list[str] = []
        queue: deque[str] = deque([platform_id])

        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent_id in self._nodes[current].dependents:
                if dependent_id not in visited:
                    visited.add(dependent_id)
                    queue.append(dependent_id)

        return order

    def topological_order(self, platform_ids: Iterable[str]) -> list[str]:
        """指定されたプラットフォーム集合を依存順に並べる（Kahnのアルゴリズム）。

        集合外の辺は無視する。同時に準備完了となったものはID順で決定的に並べる。

        Raises:
            CyclicDependencyError: 集合内に循環がある場合。
        """
        subset = set(platform_ids)
        in_degree = {pid: 0 for pid in subset}
        for pid in subset:
            for dependent_id in self.node(pid).dependents:
                if dependent_id in subset:
                    in_degree[dependent_id] += 1

        ready = sorted(pid for pid, degree in in_degree.items() if degree == 0)
        result: list[str] = []
        while ready:
            current = ready.pop(0)
            result.append(current)
            for dependent_id in self._nodes[current].dependents:
                if dependent_id not in in_degree:
                    continue
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    ready.append(dependent_id)
            ready.sort()

        if len(result) != len(subset):
            raise CyclicDependencyError(sorted(subset - set(result)))
        return result
