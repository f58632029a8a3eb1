"""
Async client for the Cosmos SDK staking query API served over LCD (REST).

Only the two paginated queries a snapshot needs are exposed, plus a
reachability probe used as the connection-establishment step.
"""

import asyncio
import base64
import binascii
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from pagination import PageRequest
from snapshot_errors import EndpointConnectionError, ProtocolError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 3.0
DEFAULT_REQUEST_TIMEOUT = 30.0

NODE_INFO_PATH = "cosmos/base/tendermint/v1beta1/node_info"
VALIDATORS_PATH = "cosmos/staking/v1beta1/validators"

# Accepted values for the validators status filter; "" means all statuses
BOND_STATUSES = (
    "",
    "BOND_STATUS_BONDED",
    "BOND_STATUS_UNBONDING",
    "BOND_STATUS_UNBONDED",
)


@dataclass(frozen=True)
class Validator:
    operator_address: str
    jailed: bool


@dataclass(frozen=True)
class Balance:
    amount: Optional[str]


@dataclass(frozen=True)
class Delegation:
    delegator_address: str
    balance: Optional[Balance]


@dataclass(frozen=True)
class ValidatorsPage:
    validators: List[Validator]
    next_key: Optional[bytes]


@dataclass(frozen=True)
class DelegationsPage:
    delegations: List[Delegation]
    next_key: Optional[bytes]


def decode_next_key(pagination: Any) -> Optional[bytes]:
    """Decode the base64 ``next_key`` of a response's pagination block."""
    if pagination is None:
        return None
    if not isinstance(pagination, dict):
        raise ProtocolError(f"Invalid pagination block: {pagination!r}")

    raw = pagination.get("next_key")
    if raw is None:
        return None
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise ProtocolError(f"Undecodable pagination key {raw!r}: {str(e)}") from e


def parse_validators_page(result: Dict[str, Any]) -> ValidatorsPage:
    validators = []
    for entry in result.get("validators") or []:
        address = entry.get("operator_address") if isinstance(entry, dict) else None
        if not address:
            raise ProtocolError(f"Validator entry without operator_address: {entry!r}")
        validators.append(Validator(
            operator_address=address,
            jailed=bool(entry.get("jailed", False)),
        ))
    return ValidatorsPage(validators, decode_next_key(result.get("pagination")))


def parse_delegations_page(result: Dict[str, Any]) -> DelegationsPage:
    delegations = []
    for entry in result.get("delegation_responses") or []:
        delegation = entry.get("delegation") if isinstance(entry, dict) else None
        if not isinstance(delegation, dict) or not delegation.get("delegator_address"):
            logger.warning(f"Skipping delegation response without a delegation: {entry!r}")
            continue

        balance = entry.get("balance")
        if balance is not None and not isinstance(balance, dict):
            raise ProtocolError(f"Invalid balance in delegation response: {entry!r}")
        delegations.append(Delegation(
            delegator_address=delegation["delegator_address"],
            balance=Balance(balance.get("amount")) if balance else None,
        ))
    return DelegationsPage(delegations, decode_next_key(result.get("pagination")))


class StakingQueryClient:
    """
    Staking queries against a single LCD endpoint.

    Use as an async context manager; the underlying aiohttp session lives for
    the duration of the ``async with`` block.
    """

    def __init__(self, endpoint: str, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.endpoint = endpoint.rstrip("/")
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.chain_id = ""
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "StakingQueryClient":
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout)
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("StakingQueryClient used outside of 'async with'")
        return self._session

    async def connect(self) -> str:
        """
        Make sure the endpoint answers HTTP within the connect timeout.

        Refused connections are re-attempted until the timeout elapses. Any
        HTTP response counts as reachable; a 200 also yields the chain id.
        """
        url = f"{self.endpoint}/{NODE_INFO_PATH}"
        logger.info(f"Connecting to {self.endpoint} (timeout {self.connect_timeout}s)")

        try:
            await asyncio.wait_for(self._probe(url), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise EndpointConnectionError(
                f"Timed out connecting to {self.endpoint} after {self.connect_timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise EndpointConnectionError(f"Cannot reach {self.endpoint}: {str(e)}") from e

        logger.info(f"Connected to {self.endpoint}" + (f" (chain {self.chain_id})" if self.chain_id else ""))
        return self.chain_id

    async def _probe(self, url: str):
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(self.connect_timeout),
            wait=wait_fixed(0.25),
            retry=retry_if_exception_type(aiohttp.ClientConnectionError),
            reraise=True,
        ):
            with attempt:
                async with self.session.get(url) as response:
                    if response.status != 200:
                        logger.warning(f"Endpoint {self.endpoint} node_info returned status {response.status}")
                        return
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        logger.warning(f"Endpoint {self.endpoint} returned non-JSON node_info")
                        return
                    if isinstance(data, dict):
                        node_info = data.get("default_node_info") or data.get("node_info") or {}
                        if isinstance(node_info, dict):
                            self.chain_id = str(node_info.get("network", ""))
                            return
                    logger.warning(f"Endpoint {self.endpoint} returned unrecognized node_info: {data!r:.200}")

    async def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.endpoint}/{path}"
        logger.debug(f"Requesting {url}")

        try:
            async with self.session.get(url) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise ProtocolError(f"HTTP error {response.status} from {url}: {error_text}")
                try:
                    result = await response.json(content_type=None)
                except ValueError as e:
                    raise ProtocolError(f"Invalid JSON from {url}: {str(e)}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timeout error querying {url}") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Error querying {url}: {str(e)}") from e

        if not isinstance(result, dict):
            raise ProtocolError(f"Unexpected response body from {url}: {result!r}")
        return result

    async def list_validators(self, status: str, page: PageRequest) -> ValidatorsPage:
        """One page of validators, optionally filtered by bond status."""
        params = page.query_params()
        if status:
            params = f"status={urllib.parse.quote(status)}&{params}"
        result = await self._get_json(f"{VALIDATORS_PATH}?{params}")
        return parse_validators_page(result)

    async def list_delegations(self, validator_addr: str, page: PageRequest) -> DelegationsPage:
        """One page of delegations made to ``validator_addr``."""
        path = f"{VALIDATORS_PATH}/{urllib.parse.quote(validator_addr)}/delegations?{page.query_params()}"
        result = await self._get_json(path)
        return parse_delegations_page(result)
