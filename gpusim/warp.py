from collections.abc import Hashable
from dataclasses import dataclass


@dataclass
class WarpStats:
    warp_id: int
    active_lanes: int
    width: int
    branch_sites: int = 0
    branch_cost: int = 0
    max_arms: int = 0
    serialized_lanes: int = 0
    global_requests: int = 0
    global_transactions: int = 0
    ideal_transactions: int = 0
    shared_requests: int = 0
    bank_conflicts: int = 0

    @property
    def diverged(self) -> bool:
        return self.max_arms > 1

    @property
    def divergence_cost(self) -> int:
        return self.branch_cost - self.branch_sites

    @property
    def lane_utilization(self) -> float:
        return self.active_lanes / self.width

    @property
    def issue_cycles(self) -> int:
        return 1 + self.divergence_cost + self.global_transactions + self.bank_conflicts


class Warp:
    """A group of lanes executing in lockstep.

    Every branch site, global access and shared access a lane performs is
    keyed by a site; lanes of the same warp that hit the same site are taken
    to have executed that instruction together. From that the warp derives
    one active-lane mask per branch arm, the memory sectors a global access
    touches, and the bank replays of a shared access.
    """

    def __init__(
        self,
        warp_id: int,
        active_lanes: int,
        width: int = 32,
        sector_bytes: int = 32,
        banks: int = 32,
        bank_width: int = 4,
    ):
        if not 0 < active_lanes <= width:
            raise ValueError(f"active_lanes must be in 1..{width}, got {active_lanes}")

        self.warp_id = warp_id
        self.width = width
        self.active_lanes = active_lanes
        self.active_mask = (1 << active_lanes) - 1
        self.sector_bytes = sector_bytes
        self.banks = banks
        self.bank_width = bank_width

        self._arms: dict[Hashable, dict[Hashable, int]] = {}
        self._global: dict[Hashable, list[tuple[int, int]]] = {}
        self._shared: dict[Hashable, list[int]] = {}

    def record_branch(self, lane: int, site: Hashable, tag: Hashable) -> None:
        arms = self._arms.setdefault(site, {})
        arms[tag] = arms.get(tag, 0) | (1 << lane)

    def record_global(self, site: Hashable, address: int, nbytes: int) -> None:
        self._global.setdefault(site, []).append((address, nbytes))

    def record_shared(self, site: Hashable, address: int) -> None:
        self._shared.setdefault(site, []).append(address)

    def arm_masks(self, site: Hashable) -> dict[Hashable, int]:
        return dict(self._arms.get(site, {}))

    def _sectors(self, accesses: list[tuple[int, int]]) -> tuple[int, int]:
        sectors = set()
        touched = set()
        for address, nbytes in accesses:
            touched.update(range(address, address + nbytes))
            first = address // self.sector_bytes
            last = (address + nbytes - 1) // self.sector_bytes
            sectors.update(range(first, last + 1))
        ideal = -(-len(touched) // self.sector_bytes)
        return len(sectors), ideal

    def _replays(self, addresses: list[int]) -> int:
        words_per_bank: dict[int, set[int]] = {}
        for address in addresses:
            word = address // self.bank_width
            words_per_bank.setdefault(word % self.banks, set()).add(word)
        return max(len(words) for words in words_per_bank.values()) - 1

    def summarize(self) -> WarpStats:
        stats = WarpStats(
            warp_id=self.warp_id,
            active_lanes=self.active_lanes,
            width=self.width,
        )

        for arms in self._arms.values():
            counts = [mask.bit_count() for mask in arms.values()]
            stats.branch_sites += 1
            stats.branch_cost += len(arms)
            stats.max_arms = max(stats.max_arms, len(arms))
            stats.serialized_lanes += sum(counts) - max(counts)

        for accesses in self._global.values():
            transactions, ideal = self._sectors(accesses)
            stats.global_requests += 1
            stats.global_transactions += transactions
            stats.ideal_transactions += ideal

        for addresses in self._shared.values():
            stats.shared_requests += 1
            stats.bank_conflicts += self._replays(addresses)

        return stats


def explain_warp_divergence() -> str:
    return """
Warp Divergence

A warp issues one instruction for all 32 lanes at a time.

Uniform branch:
  - Every lane takes the same arm
  - Only that arm is issued: cost 1x

Divergent branch:
  - Lanes disagree; the warp issues every arm that any lane took
  - Lanes not on the current arm sit idle (masked off)
  - Cost = number of distinct arms taken

Examples (one warp):
  if (lane < 16) ...          2 arms -> 2x
  switch (lane % 4) ...       4 arms -> 4x
  switch (lane) ...           32 arms -> 32x, fully serialized

Avoiding it:
  - Branch on values that are uniform per warp (blockIdx, warp id)
  - Arrange data so that lanes of one warp take the same path
"""
