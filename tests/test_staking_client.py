import asyncio
import base64
import socket

import pytest

from lcd_fixtures import FakeLCD, delegation, page_key, serve, validator
from pagination import PageRequest
from snapshot_errors import EndpointConnectionError, ProtocolError, TransportError
from staking_client import StakingQueryClient, decode_next_key, parse_delegations_page, parse_validators_page


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_decode_next_key():
    assert decode_next_key(None) is None
    assert decode_next_key({}) is None
    assert decode_next_key({"next_key": None}) is None
    assert decode_next_key({"next_key": ""}) == b""
    assert decode_next_key({"next_key": base64.b64encode(b"\x14abc").decode()}) == b"\x14abc"


@pytest.mark.parametrize("pagination", [{"next_key": "not base64!"}, "garbage"])
def test_decode_next_key_rejects_malformed(pagination):
    with pytest.raises(ProtocolError):
        decode_next_key(pagination)


def test_parse_validators_page():
    page = parse_validators_page({
        "validators": [validator("junovaloper1a"), validator("junovaloper1b", jailed=True)],
        "pagination": {"next_key": page_key(1)},
    })

    assert [v.operator_address for v in page.validators] == ["junovaloper1a", "junovaloper1b"]
    assert [v.jailed for v in page.validators] == [False, True]
    assert page.next_key == b"page-1"


def test_parse_validators_page_requires_address():
    with pytest.raises(ProtocolError):
        parse_validators_page({"validators": [{"jailed": False}]})


def test_parse_delegations_page_keeps_missing_balance():
    page = parse_delegations_page({
        "delegation_responses": [
            delegation("juno1a", "junovaloper1a", "42"),
            delegation("juno1b", "junovaloper1a", balance=False),
            {"balance": {"denom": "ujuno", "amount": "1"}},
        ],
        "pagination": None,
    })

    assert [d.delegator_address for d in page.delegations] == ["juno1a", "juno1b"]
    assert page.delegations[0].balance.amount == "42"
    assert page.delegations[1].balance is None
    assert page.next_key is None


def test_connect_reads_chain_id():
    lcd = FakeLCD(chain_id="juno-1")

    async def _run():
        async with serve(lcd) as endpoint:
            async with StakingQueryClient(endpoint) as client:
                return await client.connect()

    assert asyncio.run(_run()) == "juno-1"


@pytest.mark.parametrize("body", [{"default_node_info": "not-cosmos"}, ["node"], {"node_info": 7}])
def test_connect_tolerates_unrecognized_node_info(body):
    lcd = FakeLCD(node_info_body=body)

    async def _run():
        async with serve(lcd) as endpoint:
            async with StakingQueryClient(endpoint) as client:
                return await client.connect()

    assert asyncio.run(_run()) == ""


def test_connect_to_unreachable_endpoint_fails():
    async def _run():
        async with StakingQueryClient(f"http://127.0.0.1:{unused_port()}", connect_timeout=0.5) as client:
            await client.connect()

    with pytest.raises(EndpointConnectionError):
        asyncio.run(_run())


def test_list_validators_follows_cursor_and_filters_status():
    lcd = FakeLCD(validator_pages=[
        [validator("junovaloper1a"), validator("junovaloper1u", status="BOND_STATUS_UNBONDED")],
        [validator("junovaloper1b")],
    ])

    async def _run():
        async with serve(lcd) as endpoint:
            async with StakingQueryClient(endpoint) as client:
                first = await client.list_validators("BOND_STATUS_BONDED", PageRequest(limit=2))
                second = await client.list_validators("BOND_STATUS_BONDED", PageRequest(limit=2, key=first.next_key))
                return first, second

    first, second = asyncio.run(_run())

    assert [v.operator_address for v in first.validators] == ["junovaloper1a"]
    assert first.next_key == b"page-1"
    assert [v.operator_address for v in second.validators] == ["junovaloper1b"]
    assert second.next_key is None

    _, query = lcd.requests[1]
    assert query["status"] == "BOND_STATUS_BONDED"
    assert query["pagination.limit"] == "2"
    assert query["pagination.key"] == page_key(1)
    assert "pagination.offset" not in query


def test_list_delegations():
    lcd = FakeLCD(delegation_pages={
        "junovaloper1a": [[delegation("juno1a", "junovaloper1a", "100")]],
    }, final_key="")

    async def _run():
        async with serve(lcd) as endpoint:
            async with StakingQueryClient(endpoint) as client:
                return await client.list_delegations("junovaloper1a", PageRequest())

    page = asyncio.run(_run())

    assert [(d.delegator_address, d.balance.amount) for d in page.delegations] == [("juno1a", "100")]
    assert page.next_key == b""
    assert lcd.requests[0][0] == "/cosmos/staking/v1beta1/validators/junovaloper1a/delegations"


def test_error_status_raises_protocol_error():
    lcd = FakeLCD(error_status=500)

    async def _run():
        async with serve(lcd) as endpoint:
            async with StakingQueryClient(endpoint) as client:
                await client.list_validators("", PageRequest())

    with pytest.raises(ProtocolError, match="HTTP error 500"):
        asyncio.run(_run())


def test_network_failure_mid_crawl_raises_transport_error():
    async def _run():
        async with StakingQueryClient(f"http://127.0.0.1:{unused_port()}") as client:
            await client.list_delegations("junovaloper1a", PageRequest())

    with pytest.raises(TransportError):
        asyncio.run(_run())
