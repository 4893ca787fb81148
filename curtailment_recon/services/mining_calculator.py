"""Bitcoin mining yield for curtailed energy.

The yield of a settlement period is computed as:

    miners  = floor(energy_kWh / (miner_power_kW * 0.5h))
    hashes  = miners * hashrate_TH * 1e12 * 1800s
    blocks  = hashes / (difficulty * 2**32)
    bitcoin = blocks * block_reward(settlement_date)

The block reward is looked up for the settlement date being calculated,
never for the date the calculation runs, so historical periods keep the
pre-halving subsidy.
"""

import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Tuple, Union

from curtailment_recon.core.exceptions import InvalidDifficulty, MalformedRecord, UnknownMinerModel

SETTLEMENT_PERIOD_HOURS = 0.5
SETTLEMENT_PERIOD_SECONDS = 1800
HASHES_PER_DIFFICULTY = 2 ** 32
BITCOIN_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class MinerProfile:
    """Rated hardware profile of a miner model."""
    name: str
    hashrate_th: float  # TH/s
    power_watts: float

    @property
    def efficiency_j_per_th(self) -> float:
        return self.power_watts / self.hashrate_th

    @property
    def energy_per_period_kwh(self) -> float:
        return (self.power_watts / 1000) * SETTLEMENT_PERIOD_HOURS


MINER_PROFILES: Dict[str, MinerProfile] = {
    "S19J_PRO": MinerProfile("S19J_PRO", hashrate_th=100, power_watts=3050),
    "S9": MinerProfile("S9", hashrate_th=13.5, power_watts=1350),
    "M20S": MinerProfile("M20S", hashrate_th=68, power_watts=3360),
}

# (effective from, BTC per block), ascending
BLOCK_REWARD_SCHEDULE: List[Tuple[date, Decimal]] = [
    (date(2016, 7, 9), Decimal("12.5")),
    (date(2020, 5, 11), Decimal("6.25")),
    (date(2024, 4, 20), Decimal("3.125")),
]


def get_miner_profile(miner_model: str) -> MinerProfile:
    """Return the profile for a miner model name."""
    try:
        return MINER_PROFILES[miner_model.upper()]
    except (KeyError, AttributeError):
        raise UnknownMinerModel(str(miner_model))


def block_reward_for(settlement_date: date) -> Decimal:
    """Block subsidy in force on ``settlement_date``."""
    reward = BLOCK_REWARD_SCHEDULE[0][1]
    for effective_from, value in BLOCK_REWARD_SCHEDULE:
        if settlement_date >= effective_from:
            reward = value
        else:
            break
    return reward


def calculate_yield(
    curtailed_energy_mwh: Union[float, Decimal],
    miner_model: str,
    difficulty: Union[float, Decimal, int],
    settlement_date: date,
) -> Decimal:
    """Bitcoin mined in one settlement period with the given curtailed energy."""
    profile = get_miner_profile(miner_model)

    try:
        difficulty_value = float(difficulty)
    except (TypeError, ValueError):
        raise InvalidDifficulty(difficulty)
    if not math.isfinite(difficulty_value) or difficulty_value <= 0:
        raise InvalidDifficulty(difficulty)

    energy_mwh = float(curtailed_energy_mwh)
    if not math.isfinite(energy_mwh) or energy_mwh < 0:
        raise MalformedRecord(
            f"Curtailed energy must be non-negative, got {curtailed_energy_mwh}",
            {"energy_mwh": str(curtailed_energy_mwh)},
        )

    miner_count = math.floor(energy_mwh * 1000 / profile.energy_per_period_kwh)
    if miner_count == 0:
        return Decimal("0").quantize(BITCOIN_QUANTUM)

    hashes = miner_count * profile.hashrate_th * 1e12 * SETTLEMENT_PERIOD_SECONDS
    blocks = hashes / (difficulty_value * HASHES_PER_DIFFICULTY)
    bitcoin = Decimal(repr(blocks)) * block_reward_for(settlement_date)
    return bitcoin.quantize(BITCOIN_QUANTUM, rounding=ROUND_HALF_UP)
