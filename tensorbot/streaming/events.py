"""
Decoded transaction events.

A transaction pairs the on-chain trade (tx) with the asset that changed hands
(mint). Payloads are decoded leniently: missing fields become None, only the
envelope shape is checked upstream.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


def _to_int(value: Any) -> Optional[int]:
    """Coerce numeric strings (lamport amounts arrive as strings) to int."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class TxMetadata:
    """Marketplace-specific metadata attached to a trade."""

    auction_house: Optional[str] = None
    url_id: Optional[str] = None
    seller_ref: Optional[str] = None
    token_acc: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "TxMetadata":
        data = _as_dict(data)
        return cls(
            auction_house=data.get("auctionHouse"),
            url_id=data.get("urlId"),
            seller_ref=data.get("sellerRef"),
            token_acc=data.get("tokenAcc"),
        )


@dataclass(frozen=True)
class TxFacts:
    """The trade itself."""

    source: str
    tx_type: str
    tx_key: Optional[str] = None
    tx_id: Optional[str] = None
    gross_amount: Optional[int] = None  # In gross_amount_unit (lamports for SOL)
    gross_amount_unit: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    tx_at: Optional[str] = None
    tx_metadata: TxMetadata = field(default_factory=TxMetadata)
    pool_onchain_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "TxFacts":
        data = _as_dict(data)
        return cls(
            source=data.get("source") or "",
            tx_type=data.get("txType") or "",
            tx_key=data.get("txKey"),
            tx_id=data.get("txId"),
            gross_amount=_to_int(data.get("grossAmount")),
            gross_amount_unit=data.get("grossAmountUnit"),
            seller_id=data.get("sellerId"),
            buyer_id=data.get("buyerId"),
            tx_at=data.get("txAt"),
            tx_metadata=TxMetadata.from_dict(data.get("txMetadata")),
            pool_onchain_id=data.get("poolOnchainId"),
        )


@dataclass(frozen=True)
class Attribute:
    """Single trait of an NFT."""

    trait_type: str
    value: Any


@dataclass(frozen=True)
class LastSale:
    """Snapshot of the previous sale of a mint."""

    price: Optional[int]
    price_unit: Optional[str]
    tx_at: Optional[str]


@dataclass(frozen=True)
class MintFacts:
    """The asset that was traded."""

    onchain_id: str
    name: Optional[str] = None
    image_uri: Optional[str] = None
    metadata_uri: Optional[str] = None
    metadata_fetched_at: Optional[str] = None
    sell_royalty_fee_bps: Optional[int] = None
    token_standard: Optional[str] = None
    token_edition: Optional[int] = None
    attributes: tuple[Attribute, ...] = ()
    last_sale: Optional[LastSale] = None
    acc_state: Optional[str] = None
    rarity_rank_tt: Optional[int] = None
    rarity_rank_tt_stat: Optional[int] = None
    rarity_rank_hr: Optional[int] = None
    rarity_rank_team: Optional[int] = None
    rarity_rank_stat: Optional[int] = None
    rarity_rank_tn: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "MintFacts":
        data = _as_dict(data)

        raw_attributes = data.get("attributes")
        if not isinstance(raw_attributes, list):
            raw_attributes = []
        attributes = tuple(
            Attribute(trait_type=str(attr.get("trait_type", "")), value=attr.get("value"))
            for attr in raw_attributes
            if isinstance(attr, dict)
        )

        last_sale = None
        if isinstance(data.get("lastSale"), dict):
            sale = data["lastSale"]
            last_sale = LastSale(
                price=_to_int(sale.get("price")),
                price_unit=sale.get("priceUnit"),
                tx_at=sale.get("txAt"),
            )

        return cls(
            onchain_id=data.get("onchainId") or "",
            name=data.get("name"),
            image_uri=data.get("imageUri"),
            metadata_uri=data.get("metadataUri"),
            metadata_fetched_at=data.get("metadataFetchedAt"),
            sell_royalty_fee_bps=_to_int(data.get("sellRoyaltyFeeBPS")),
            token_standard=data.get("tokenStandard"),
            token_edition=_to_int(data.get("tokenEdition")),
            attributes=attributes,
            last_sale=last_sale,
            acc_state=data.get("accState"),
            rarity_rank_tt=_to_int(data.get("rarityRankTT")),
            rarity_rank_tt_stat=_to_int(data.get("rarityRankTTStat")),
            rarity_rank_hr=_to_int(data.get("rarityRankHR")),
            rarity_rank_team=_to_int(data.get("rarityRankTeam")),
            rarity_rank_stat=_to_int(data.get("rarityRankStat")),
            rarity_rank_tn=_to_int(data.get("rarityRankTN")),
        )

    def trait(self, trait_type: str) -> Optional[Any]:
        """Value of the first attribute with this trait type, if any."""
        for attr in self.attributes:
            if attr.trait_type == trait_type:
                return attr.value
        return None


@dataclass(frozen=True)
class Transaction:
    """A decoded newTransactionTV2 event."""

    tx: TxFacts
    mint: MintFacts
    raw: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def source(self) -> str:
        return self.tx.source

    @property
    def tx_type(self) -> str:
        return self.tx.tx_type

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        return cls(
            tx=TxFacts.from_dict(data.get("tx")),
            mint=MintFacts.from_dict(data.get("mint")),
            raw=data,
        )
