"""
Sale notification formatting.

Builds the Discord embed, the tweet text and the console line for a sale.
Amounts arrive in lamports; USD conversion is optional and omitted when the
price lookup failed.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from tensorbot.streaming.events import Transaction

LAMPORTS_PER_SOL = 1_000_000_000

# Used when collection stats don't report a supply
DEFAULT_SUPPLY = 10_000

TENSOR_ITEM_URL = "https://www.tensor.trade/item/{onchain_id}"
TENSOR_WALLET_URL = "https://www.tensor.trade/portfolio?wallet={wallet}"
XRAY_TX_URL = "https://xray.helius.xyz/tx/{tx_id}"
FOOTER_ICON_URL = "https://i.ibb.co/ZMRt7cp/tt.png"


class RarityTier(str, Enum):
    MYTHIC = "Mythic"
    LEGENDARY = "Legendary"
    EPIC = "Epic"
    RARE = "Rare"
    UNCOMMON = "Uncommon"
    COMMON = "Common"


# Upper bound of rank / supply for each tier, checked in order
RARITY_TIER_PERCENTAGES = [
    (RarityTier.MYTHIC, 0.01),
    (RarityTier.LEGENDARY, 0.05),
    (RarityTier.EPIC, 0.15),
    (RarityTier.RARE, 0.35),
    (RarityTier.UNCOMMON, 0.60),
    (RarityTier.COMMON, 1.0),
]

RARITY_ORBS = {
    RarityTier.MYTHIC: "🔴",
    RarityTier.LEGENDARY: "🟠",
    RarityTier.EPIC: "🟣",
    RarityTier.RARE: "🔵",
    RarityTier.UNCOMMON: "🟢",
    RarityTier.COMMON: "⚪️",
}


def get_rarity_tier(rarity_rank: int, max_supply: int) -> RarityTier:
    """Tier for a rank within a collection of max_supply items."""
    if max_supply <= 0:
        max_supply = DEFAULT_SUPPLY
    percentage = rarity_rank / max_supply

    for tier, threshold in RARITY_TIER_PERCENTAGES:
        if percentage <= threshold:
            return tier
    return RarityTier.COMMON


def round_to_decimal(value: float, decimals: int = 2) -> float:
    """Round half up (not banker's rounding)."""
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def smart_truncate(text: str, count_both_sides: int = 4) -> str:
    """'AbCdEfGhIjKl' -> 'AbCd...IjKl'."""
    if len(text) <= count_both_sides * 2:
        return text
    return f"{text[:count_both_sides]}...{text[-count_both_sides:]}"


def lamports_to_sol(lamports: Optional[int]) -> float:
    return round_to_decimal((lamports or 0) / LAMPORTS_PER_SOL, 2)


def format_usd(amount: float) -> str:
    return f"${amount:,.2f}"


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def rarity_message(transaction: Transaction, stats: Optional[dict]) -> Optional[str]:
    """'🟣 Epic (123)' or None when the mint has no rank."""
    rank = transaction.mint.rarity_rank_tt
    if rank is None:
        return None
    supply = _int_or_none((stats or {}).get("numMints")) or DEFAULT_SUPPLY
    tier = get_rarity_tier(rank, supply)
    return f"{RARITY_ORBS[tier]} {tier.value} ({rank})"


def floor_sol(stats: Optional[dict]) -> Optional[float]:
    lamports = _int_or_none((stats or {}).get("buyNowPriceNetFees"))
    if lamports is None:
        return None
    return lamports_to_sol(lamports)


def _wallet_link(wallet: Optional[str], fallback: str) -> str:
    if not wallet:
        return fallback
    return f"[{wallet[:4]}]({TENSOR_WALLET_URL.format(wallet=wallet)})"


def build_sale_embed(
    transaction: Transaction,
    stats: Optional[dict] = None,
    usd_rate: Optional[float] = None,
) -> dict:
    """
    Build a Discord embed (webhook JSON shape) for a sale.

    Args:
        transaction: Decoded sale
        stats: Collection stats (floor and supply), optional
        usd_rate: USD per SOL, optional

    Returns:
        Embed dictionary
    """
    tx, mint = transaction.tx, transaction.mint
    item_url = TENSOR_ITEM_URL.format(onchain_id=mint.onchain_id)
    sol_price = lamports_to_sol(tx.gross_amount)

    price = f"◎{sol_price}"
    if usd_rate is not None:
        price += f" ({format_usd(sol_price * usd_rate)})"

    fields = []
    faction = mint.trait("Faction")
    if faction:
        fields.append({"name": "Faction", "value": str(faction)})
    fields.append({"name": "Price", "value": price})

    floor = floor_sol(stats)
    if floor is not None:
        fields.append({"name": "Floor", "value": f"◎{floor}"})

    wallets = f"{_wallet_link(tx.seller_id, 'n/a')} → {_wallet_link(tx.buyer_id, 'Unknown')}"
    fields.append({"name": "Wallets", "value": wallets})

    links = [f"[Tensor]({item_url})"]
    if tx.tx_id:
        links.append(f"[XRAY]({XRAY_TX_URL.format(tx_id=tx.tx_id)})")
    fields.append({"name": "Links", "value": " | ".join(links)})

    embed = {
        "title": mint.name or mint.onchain_id,
        "url": item_url,
        "fields": fields,
        "footer": {"icon_url": FOOTER_ICON_URL, "text": "Tensor Trade"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    description = rarity_message(transaction, stats)
    if description:
        embed["description"] = description
    if mint.image_uri:
        embed["thumbnail"] = {"url": mint.image_uri}

    return embed


def build_sale_tweet(
    transaction: Transaction,
    stats: Optional[dict] = None,
    usd_rate: Optional[float] = None,
) -> str:
    """Tweet text for a sale; optional lines are left out when data is missing."""
    tx, mint = transaction.tx, transaction.mint
    sol_price = lamports_to_sol(tx.gross_amount)

    lines = [f"😲 {mint.name or mint.onchain_id} SOLD for ◎{sol_price}"]
    if usd_rate is not None:
        lines.append(f"💵 {format_usd(sol_price * usd_rate)} USD")

    floor = floor_sol(stats)
    if floor is not None:
        lines.append(f"📈 ◎{floor} floor")

    rarity = rarity_message(transaction, stats)
    if rarity:
        lines.append(rarity)

    faction = mint.trait("Faction")
    if faction:
        lines.append(f"👥 {faction}")

    text = "\n".join(lines)
    text += f"\n\n→ {TENSOR_ITEM_URL.format(onchain_id=mint.onchain_id)}"
    if tx.tx_id:
        text += f"\n\n📝 {XRAY_TX_URL.format(tx_id=tx.tx_id)}"
    return text


def format_sale_log(transaction: Transaction) -> str:
    """One-line console summary of a sale."""
    tx, mint = transaction.tx, transaction.mint
    return (
        f"New sale for {mint.name} ({mint.onchain_id}) "
        f"buyer={smart_truncate(tx.buyer_id or '-')} "
        f"seller={smart_truncate(tx.seller_id or '-')} "
        f"gross={tx.gross_amount} {tx.gross_amount_unit or ''}".rstrip()
    )
