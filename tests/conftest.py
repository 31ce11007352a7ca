import pytest


def make_tx_payload(
    source: str = "TENSORSWAP",
    tx_type: str = "SALE_BUY_NOW",
    onchain_id: str = "MintAddr1111111111111111111111111111111111",
    gross_amount: str = "12500000000",
    rank: int = 42,
    faction: str = "Vanguard",
) -> dict:
    """newTransactionTV2 object as Tensor sends it."""
    attributes = [{"trait_type": "Background", "value": "Blue"}]
    if faction:
        attributes.append({"trait_type": "Faction", "value": faction})

    return {
        "tx": {
            "source": source,
            "txKey": "txkey-1",
            "txId": "5sig11111111111111111111111111111111111111111",
            "txType": tx_type,
            "grossAmount": gross_amount,
            "grossAmountUnit": "SOL_LAMPORT",
            "sellerId": "SellerWallet1111111111111111111111111111111",
            "buyerId": "BuyerWallet11111111111111111111111111111111",
            "txAt": "2024-03-01T12:00:00.000Z",
            "txMetadata": {
                "auctionHouse": None,
                "urlId": None,
                "sellerRef": None,
                "tokenAcc": "TokenAcc1111",
                "__typename": "TxMetadata",
            },
            "poolOnchainId": None,
            "__typename": "ParsedTransaction",
        },
        "mint": {
            "onchainId": onchain_id,
            "name": "Test NFT #42",
            "imageUri": "https://img.example.com/42.png",
            "metadataUri": "https://meta.example.com/42.json",
            "metadataFetchedAt": "2024-02-01T00:00:00.000Z",
            "sellRoyaltyFeeBPS": 500,
            "tokenStandard": "ProgrammableNonFungible",
            "tokenEdition": None,
            "attributes": attributes,
            "lastSale": {"price": "11000000000", "priceUnit": "SOL_LAMPORT", "txAt": "2024-02-20T00:00:00.000Z"},
            "accState": "ONCHAIN",
            "rarityRankTT": rank,
            "rarityRankTTStat": 40,
            "rarityRankHR": 45,
            "rarityRankTeam": None,
            "rarityRankStat": 41,
            "rarityRankTN": 44,
            "__typename": "TLinkedTxMintTV2",
        },
        "__typename": "LinkedTransactionTV2",
    }


@pytest.fixture
def tx_payload():
    """Factory for transaction payloads."""
    return make_tx_payload
