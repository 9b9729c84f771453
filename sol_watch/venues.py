from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable

from .config import Config, ConfigError, resolve_endpoints

COMMITMENTS = ("processed", "confirmed", "finalized")

TRANSPORT_LOGS = "logs"
TRANSPORT_ACCOUNT = "account"
TRANSPORT_TRANSACTIONS = "transactions"


@dataclass(frozen=True, slots=True)
class VenueFilter:
    program_ids: tuple[str, ...]
    pools: frozenset[str] = frozenset()

    @property
    def match_all_pools(self) -> bool:
        return not self.pools

    def logs_mention_program(self, lines: Iterable[str] | None) -> bool:
        if not lines:
            return False
        for line in lines:
            if not isinstance(line, str):
                continue
            for program_id in self.program_ids:
                if program_id in line:
                    return True
        return False


@dataclass(frozen=True, slots=True)
class VenueSpec:
    venue_id: str
    program_ids: tuple[str, ...]
    pools_field: str
    transport_kind: str
    pools_required: bool = False
    default_pools: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class VenueConfig:
    venue_id: str
    filter: VenueFilter
    commitment: str
    stream_commitment: str
    transport_kind: str
    ws_url: str
    http_url: str
    output_tag: str = ""

    @property
    def output_name(self) -> str:
        return f"{self.output_tag or self.venue_id}.jsonl"

    def to_dict(self) -> dict[str, Any]:
        return {
            "venue": self.venue_id,
            "program_ids": list(self.filter.program_ids),
            "pools": sorted(self.filter.pools),
            "commitment": self.commitment,
            "stream_commitment": self.stream_commitment,
            "transport": self.transport_kind,
            "ws_url": self.ws_url,
            "http_url": self.http_url,
            "output": self.output_name,
        }


RAYDIUM_PROGRAM_IDS = (
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",  # CLMM
    "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C",  # CPMM
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",  # AMM v4
    "5quBtoiQqxF9Jv6KYKctB59NT3gtJD2Y65kdnB1Uev3h",  # StableSwap
)

VENUE_CATALOG: dict[str, VenueSpec] = {
    "orca": VenueSpec(
        venue_id="orca",
        program_ids=("whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",),
        pools_field="orca_pools",
        transport_kind=TRANSPORT_LOGS,
        default_pools=("Czfq3xZZDmsdGdUyrNLtRhGc47cXcZtLG4crryfu44zE",),
    ),
    "raydium": VenueSpec(
        venue_id="raydium",
        program_ids=RAYDIUM_PROGRAM_IDS,
        pools_field="raydium_pools",
        transport_kind=TRANSPORT_ACCOUNT,
        pools_required=True,
    ),
    "raydium-stream": VenueSpec(
        venue_id="raydium-stream",
        program_ids=RAYDIUM_PROGRAM_IDS,
        pools_field="raydium_pools",
        transport_kind=TRANSPORT_TRANSACTIONS,
        pools_required=True,
    ),
    "meteora-cpamm": VenueSpec(
        venue_id="meteora-cpamm",
        program_ids=("cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG",),
        pools_field="meteora_cpamm_pools",
        transport_kind=TRANSPORT_LOGS,
    ),
    "meteora-dammv1": VenueSpec(
        venue_id="meteora-dammv1",
        program_ids=("Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB",),
        pools_field="meteora_dammv1_pools",
        transport_kind=TRANSPORT_LOGS,
    ),
    "humidifi": VenueSpec(
        venue_id="humidifi",
        program_ids=("9H6tua7jkLhdm3w8BvgpTn5LZNU7g4ZynDmCiNN3q6Rp",),
        pools_field="humidifi_pools",
        transport_kind=TRANSPORT_LOGS,
    ),
}


def parse_pool_list(value: Any) -> list[str]:
    """Accept a JSON array, a list, or a comma/whitespace separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return _dedupe(str(item).strip() for item in value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
            if isinstance(parsed, list):
                return _dedupe(str(item).strip() for item in parsed)
            if isinstance(parsed, str):
                text = parsed
        except json.JSONDecodeError:
            pass
        items = [item.strip().strip('"').strip("'") for item in re.split(r"[,\s]+", text)]
        return _dedupe(items)
    return []


def _dedupe(items: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        if not item or item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _check_commitment(name: str, value: str) -> str:
    text = str(value).strip().lower()
    if text not in COMMITMENTS:
        raise ConfigError(f"{name} must be one of {', '.join(COMMITMENTS)}: {value!r}")
    return text


def build_venues(config: Config) -> list[VenueConfig]:
    ws_url, http_url = resolve_endpoints(config)
    commitment = _check_commitment("commitment", config.commitment)
    stream_commitment = _check_commitment("stream_commitment", config.stream_commitment)
    venue_ids = parse_pool_list(config.venues)
    if not venue_ids:
        raise ConfigError("no venues configured")
    venues: list[VenueConfig] = []
    for venue_id in venue_ids:
        spec = VENUE_CATALOG.get(venue_id)
        if spec is None:
            known = ", ".join(sorted(VENUE_CATALOG))
            raise ConfigError(f"unknown venue {venue_id!r} (known: {known})")
        pools = parse_pool_list(getattr(config, spec.pools_field))
        if not pools and spec.pools_required:
            raise ConfigError(
                f"venue {venue_id} requires pools: set SOL_WATCH_{spec.pools_field.upper()}"
            )
        if not pools and spec.default_pools:
            pools = list(spec.default_pools)
        venues.append(
            VenueConfig(
                venue_id=spec.venue_id,
                filter=VenueFilter(program_ids=spec.program_ids, pools=frozenset(pools)),
                commitment=commitment,
                stream_commitment=stream_commitment,
                transport_kind=spec.transport_kind,
                ws_url=ws_url,
                http_url=http_url,
                output_tag=spec.venue_id,
            )
        )
    return venues
