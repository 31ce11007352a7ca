"""
Tensor GraphQL wire protocol.

The subscription channel speaks graphql-transport-ws:
- Client sends connection_init after open, server answers connection_ack
- Client sends one subscribe frame per slug, keyed by a unique id
- Server pushes next frames carrying payload.data.newTransactionTV2
- Either side may ping; the other answers pong

Stats lookups use a plain batched POST to the same endpoint.
"""
from typing import Any

# Sub-protocol negotiated on the WebSocket handshake
GRAPHQL_TRANSPORT_WS = "graphql-transport-ws"

# Credential header (WebSocket handshake and HTTP POST)
API_KEY_HEADER = "X-TENSOR-API-KEY"

# Frame types
CONNECTION_INIT = "connection_init"
CONNECTION_ACK = "connection_ack"
PING = "ping"
PONG = "pong"
SUBSCRIBE = "subscribe"
NEXT = "next"
ERROR = "error"
COMPLETE = "complete"

# Field under payload.data that carries a transaction event
NEW_TRANSACTION_FIELD = "newTransactionTV2"

NEW_TRANSACTION_QUERY = """subscription NewTransaction($slug: String!) {
  newTransactionTV2(slug: $slug) {
    ...ReducedLinkedTx
    __typename
  }
}

fragment ReducedLinkedTx on LinkedTransactionTV2 {
  tx {
    ...ReducedParsedTx
    __typename
  }
  mint {
    ...ReducedMint
    __typename
  }
  __typename
}

fragment ReducedParsedTx on ParsedTransaction {
  source
  txKey
  txId
  txType
  grossAmount
  grossAmountUnit
  sellerId
  buyerId
  txAt
  txMetadata {
    auctionHouse
    urlId
    sellerRef
    tokenAcc
    __typename
  }
  poolOnchainId
  __typename
}

fragment ReducedMint on TLinkedTxMintTV2 {
  onchainId
  name
  imageUri
  metadataUri
  metadataFetchedAt
  sellRoyaltyFeeBPS
  tokenStandard
  tokenEdition
  attributes
  lastSale {
    price
    priceUnit
    txAt
    __typename
  }
  accState
  ...MintRarityFields
  __typename
}

fragment MintRarityFields on TLinkedTxMintTV2 {
  rarityRankTT
  rarityRankTTStat
  rarityRankHR
  rarityRankTeam
  rarityRankStat
  rarityRankTN
  __typename
}"""

INSTRUMENT_STATS_QUERY = """query Instrument($slug: String!) {
  instrumentTV2(slug: $slug) {
    statsV2 {
      currency
      buyNowPrice
      buyNowPriceNetFees
      sellNowPrice
      sellNowPriceNetFees
      numListed
      numMints
      floor24h
      sales24h
      volume24h
      __typename
    }
    __typename
  }
}"""


def connection_init() -> dict[str, Any]:
    return {"type": CONNECTION_INIT}


def ping() -> dict[str, Any]:
    return {"type": PING}


def pong() -> dict[str, Any]:
    return {"type": PONG}


def subscribe_frame(subscription_id: str, slug: str) -> dict[str, Any]:
    """Build the subscribe frame for one slug, correlated by subscription_id."""
    return {
        "id": subscription_id,
        "type": SUBSCRIBE,
        "payload": {
            "variables": {"slug": slug},
            "extensions": {},
            "operationName": "NewTransaction",
            "query": NEW_TRANSACTION_QUERY,
        },
    }


def instrument_stats_request(slug: str) -> dict[str, Any]:
    """Build one element of the batched stats POST body."""
    return {
        "operationName": "Instrument",
        "variables": {"slug": slug},
        "query": INSTRUMENT_STATS_QUERY,
    }


def extract_transaction(frame: dict[str, Any]) -> Any:
    """
    Return the transaction object carried by a frame, or None.

    Only checks the envelope shape: payload.data.newTransactionTV2.
    """
    payload = frame.get("payload")
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    return data.get(NEW_TRANSACTION_FIELD)
