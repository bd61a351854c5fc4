import asyncio

import httpx
import pytest
from eth_abi import decode as abi_decode
from eth_account import Account
from eth_account.messages import encode_typed_data

from fakes import (
    BENEFICIARY,
    BENEFICIARY_CHECKSUM,
    CHAIN_ID,
    FIXED_NOW,
    FORWARDER,
    GATEWAY_SIGNATURE,
    PROMPT_MINER,
    FakeLedger,
    authorization_payload,
    request_json,
    settings_mapping,
)
from prompt_mining.config import Settings
from prompt_mining.contracts import DIRECT_MINT, FORWARDER_EXECUTE, selector
from prompt_mining.errors import (
    GATEWAY_QUOTA,
    AlreadyMinted,
    ConfigurationError,
    GatewayError,
    InputValidationError,
    InvalidForwardSignature,
    LedgerUnavailable,
    MetaTxExpired,
    QuotaExceeded,
)
from prompt_mining.hashing import encode_reward, hash_content
from prompt_mining.ledger import Web3Ledger
from prompt_mining.service import MintingService

FRANCE = "What is the capital of France?"
FRANCE_DIGEST = "0x8509974b1782e5f11bc2bea2973802345c5d50a9199bdc39fcd6ff817a1b1eef"


def _sign(account, typed_data):
    signed = account.sign_message(encode_typed_data(full_message=typed_data))
    return "0x" + bytes(signed.signature).hex()


def _authorize_calls(gateway):
    return [request for request in gateway.requests if request.url.path.endswith("/authorize/mint")]


def test_direct_submit_end_to_end(build_service, user_account):
    env = build_service()

    receipt = asyncio.run(env.service.mint_direct(FRANCE, reward=10, account=user_account))

    assert receipt.digest == FRANCE_DIGEST
    assert receipt.block_number == 4242
    assert receipt.mode == "direct"
    assert receipt.authorization == {"nonce": "auth-nonce-1", "expiresAt": FIXED_NOW + 600}

    calls = _authorize_calls(env.gateway)
    assert len(calls) == 1
    body = request_json(calls[0])
    assert body["digest"] == FRANCE_DIGEST
    assert body["beneficiary"] == user_account.address
    assert body["rewardAmount"] == "10"
    assert body["signerContext"] == PROMPT_MINER
    assert FRANCE not in calls[0].content.decode("utf-8")

    assert len(env.ledger.sent) == 1
    data = bytes.fromhex(env.ledger.sent[0]["tx"]["data"][2:])
    assert data[:4] == selector(DIRECT_MINT)
    digest, content, reward, proof = abi_decode(["bytes32", "string", "bytes", "bytes"], data[4:])
    assert "0x" + digest.hex() == FRANCE_DIGEST
    assert content == FRANCE
    assert reward == encode_reward(10)
    assert "0x" + proof.hex() == GATEWAY_SIGNATURE


def test_direct_submit_rejects_foreign_beneficiary(build_service, user_account):
    env = build_service()

    with pytest.raises(InputValidationError) as excinfo:
        asyncio.run(env.service.mint_direct(FRANCE, reward=10, account=user_account, beneficiary=BENEFICIARY))

    assert excinfo.value.code == "INVALID_AUTHOR"
    assert env.gateway.requests == []


def test_direct_submit_with_relayer_uses_seeded_nonce(build_service, relayer):
    env = build_service(ledger=FakeLedger(pending=41))
    asyncio.run(env.service.initialize())

    first = asyncio.run(env.service.mint_direct("one", reward=1))
    second = asyncio.run(env.service.mint_direct("two", reward=1, beneficiary=relayer.address))

    assert [entry["tx"]["nonce"] for entry in env.ledger.sent] == [41, 42]
    assert first.transaction_hash != second.transaction_hash


def test_quota_exhaustion_never_reaches_ledger(build_service):
    env = build_service(handler=lambda request: httpx.Response(402, json={"error": {"message": "quota"}}))
    asyncio.run(env.service.initialize())

    with pytest.raises(QuotaExceeded) as excinfo:
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=10))

    assert excinfo.value.category == GATEWAY_QUOTA
    assert len(env.gateway.requests) == 1
    assert env.gateway.sleeps == []
    assert env.ledger.sent == []


def test_meta_transaction_prepare_allocates_consecutive_nonces(build_service, user_account):
    env = build_service()

    first = asyncio.run(env.service.prepare_meta_transaction("same prompt", user_account.address, reward=5))
    second = asyncio.run(env.service.prepare_meta_transaction("same prompt", user_account.address, reward=5))

    assert first["digest"] == second["digest"]
    assert second["typedData"]["message"]["nonce"] - first["typedData"]["message"]["nonce"] == 1
    assert first["typedData"]["message"]["nonce"] == 0
    assert env.ledger.sent == []


def test_meta_transaction_nonce_follows_on_chain_value(build_service, user_account):
    env = build_service(ledger=FakeLedger(forwarder_nonce=9))

    prepared = asyncio.run(env.service.prepare_meta_transaction("p", user_account.address, reward=5))

    assert prepared["typedData"]["message"]["nonce"] == 9


def test_operator_mint_short_circuits_already_minted(build_service):
    env = build_service(ledger=FakeLedger(minted=[FRANCE_DIGEST]))
    asyncio.run(env.service.initialize())

    with pytest.raises(AlreadyMinted) as excinfo:
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=10))

    assert excinfo.value.http_status == 409
    assert env.gateway.requests == []
    assert env.ledger.sent == []
    assert env.ledger.status_queries == [FRANCE_DIGEST]


def test_operator_mint_uses_default_reward(build_service):
    env = build_service()
    asyncio.run(env.service.initialize())

    receipt = asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY))

    body = request_json(_authorize_calls(env.gateway)[0])
    assert body["rewardAmount"] == str(10 * 10**18)
    assert body["beneficiary"] == BENEFICIARY_CHECKSUM
    assert receipt.mode == "operator"
    assert env.ledger.sent[0]["signer"] == env.service.relayer_address


def test_multi_reward_schedule_is_sent_as_list(build_service):
    config = Settings.from_mapping(settings_mapping(rewards={"schedule": ["1", "2.5"], "use_multi_rewards": True}))
    env = build_service(config=config)

    result = asyncio.run(env.service.authorize_for_external_signing("p", BENEFICIARY))

    assert request_json(env.gateway.requests[0])["rewardAmount"] == [str(10**18), str(25 * 10**17)]
    assert result["mintData"]["rewardAmount"] == [str(10**18), str(25 * 10**17)]


def test_negative_reward_is_rejected_before_authorization(build_service):
    env = build_service()

    with pytest.raises(InputValidationError) as excinfo:
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=-1))

    assert excinfo.value.code == "INVALID_ACTIVITY_POINTS"
    assert env.gateway.requests == []


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"content": "   "}, "INVALID_PROMPT"),
        ({"beneficiary": "0x1234"}, "INVALID_AUTHOR"),
        ({"chain_id": 1}, "INVALID_CHAIN"),
        ({"reward": "1.5"}, "INVALID_ACTIVITY_POINTS"),
    ],
)
def test_input_validation_codes(build_service, kwargs, code):
    env = build_service()
    arguments = {"content": FRANCE, "beneficiary": BENEFICIARY, "reward": 10, "chain_id": None}
    arguments.update(kwargs)

    with pytest.raises(InputValidationError) as excinfo:
        asyncio.run(env.service.mint_for(**arguments))

    assert excinfo.value.code == code
    assert env.gateway.requests == []


def test_external_signing_returns_mint_data(build_service):
    env = build_service()

    result = asyncio.run(env.service.authorize_for_external_signing(FRANCE, BENEFICIARY, reward="7"))

    assert result["digest"] == FRANCE_DIGEST
    assert result["authorization"]["signature"] == GATEWAY_SIGNATURE
    assert result["mintData"] == {
        "content": FRANCE,
        "beneficiary": BENEFICIARY_CHECKSUM,
        "rewardAmount": "7",
        "rewardData": "0x" + encode_reward(7).hex(),
        "contract": PROMPT_MINER,
        "chainId": CHAIN_ID,
    }
    assert env.ledger.sent == []


def test_meta_transaction_round_trip(build_service, user_account):
    env = build_service()
    asyncio.run(env.service.initialize())

    prepared = asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10))
    typed = prepared["typedData"]
    assert typed["domain"]["verifyingContract"] == FORWARDER
    assert typed["message"]["deadline"] == FIXED_NOW + 3600
    assert typed["message"]["gas"] == 500_000

    receipt = asyncio.run(env.service.relay_meta_transaction(typed["message"], _sign(user_account, typed)))

    assert receipt.digest == FRANCE_DIGEST
    assert receipt.mode == "meta_tx"
    sent = env.ledger.sent[0]
    assert sent["signer"] == env.service.relayer_address
    assert sent["tx"]["to"] == FORWARDER
    assert sent["tx"]["gas"] == 550_000
    assert sent["tx"]["nonce"] == 0
    assert bytes.fromhex(sent["tx"]["data"][2:])[:4] == selector(FORWARDER_EXECUTE)


def test_relay_rejects_signature_from_another_key(build_service, user_account, relayer):
    env = build_service()
    asyncio.run(env.service.initialize())
    typed = asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10))["typedData"]

    with pytest.raises(InvalidForwardSignature):
        asyncio.run(env.service.relay_meta_transaction(typed["message"], _sign(relayer, typed)))

    assert env.ledger.sent == []


def test_relay_rejects_expired_request(build_service, user_account):
    now = {"value": FIXED_NOW}
    env = build_service(clock=lambda: now["value"])
    asyncio.run(env.service.initialize())
    typed = asyncio.run(
        env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10, deadline=FIXED_NOW + 60)
    )["typedData"]
    signature = _sign(user_account, typed)

    now["value"] = FIXED_NOW + 60
    with pytest.raises(MetaTxExpired):
        asyncio.run(env.service.relay_meta_transaction(typed["message"], signature))

    assert env.ledger.sent == []


def test_relay_validates_signature_shape(build_service, user_account):
    env = build_service()
    typed = asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10))["typedData"]

    with pytest.raises(InputValidationError) as excinfo:
        asyncio.run(env.service.relay_meta_transaction(typed["message"], "0x1234"))

    assert excinfo.value.code == "INVALID_SIGNATURE"


def test_prepare_validates_gas_and_deadline(build_service, user_account):
    env = build_service()

    with pytest.raises(InputValidationError) as gas_error:
        asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, gas=0))
    with pytest.raises(InputValidationError) as deadline_error:
        asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, deadline=FIXED_NOW))

    assert gas_error.value.code == "INVALID_GAS"
    assert deadline_error.value.code == "INVALID_DEADLINE"
    assert env.gateway.requests == []


def test_prepare_requires_forwarder(build_service, user_account):
    mapping = settings_mapping()
    mapping["chains"][0].pop("forwarder")
    env = build_service(config=Settings.from_mapping(mapping))

    with pytest.raises(ConfigurationError):
        asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address))


def test_mint_status_accepts_content_or_digest(build_service):
    env = build_service(ledger=FakeLedger(minted=[FRANCE_DIGEST]))

    by_content = asyncio.run(env.service.query_mint_status(FRANCE))
    by_digest = asyncio.run(env.service.query_mint_status(FRANCE_DIGEST.upper().replace("0X", "0x")))
    other = asyncio.run(env.service.query_mint_status(hash_content("nope")))

    assert by_content == {"digest": FRANCE_DIGEST, "minted": True, "chainId": CHAIN_ID}
    assert by_digest["minted"] is True
    assert other["minted"] is False


def test_balance_query_formats_wei_and_ether(build_service):
    ledger = FakeLedger()
    ledger.balances[BENEFICIARY] = 25 * 10**18
    env = build_service(ledger=ledger)

    balance = asyncio.run(env.service.query_balance(BENEFICIARY))

    assert balance["address"] == BENEFICIARY_CHECKSUM
    assert balance["wei"] == str(25 * 10**18)
    assert balance["ether"] == "25"
    assert balance["symbol"] == "AP"


def test_health_reports_degraded_ledger(build_service):
    healthy = asyncio.run(build_service().service.health())
    assert healthy["status"] == "ok"
    assert healthy["chains"][str(CHAIN_ID)]["blockNumber"] == 4242

    env = build_service(ledger=FakeLedger(block_error=ConnectionError("down")))
    degraded = asyncio.run(env.service.health())
    assert degraded["status"] == "degraded"
    assert degraded["chains"][str(CHAIN_ID)]["reachable"] is False


def test_metrics_count_outcomes(build_service):
    env = build_service(ledger=FakeLedger(minted=[FRANCE_DIGEST]))
    asyncio.run(env.service.initialize())

    asyncio.run(env.service.mint_for("fresh prompt", BENEFICIARY, reward=1))
    with pytest.raises(AlreadyMinted):
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=1))

    text = env.service.metrics().decode("utf-8")
    assert 'mint_requests_total{mode="operator",outcome="success"} 1.0' in text
    assert 'mint_requests_total{mode="operator",outcome="ALREADY_MINTED"} 1.0' in text
    assert 'gateway_attempts_total{outcome="success"} 1.0' in text
    assert "mint_latency_seconds_count" in text


def test_listing_and_analytics_validation(build_service):
    env = build_service()

    with pytest.raises(InputValidationError) as limit_error:
        asyncio.run(env.service.list_prompts(limit=500))
    with pytest.raises(InputValidationError) as period_error:
        asyncio.run(env.service.get_analytics("year"))

    assert limit_error.value.code == "INVALID_LIMIT"
    assert period_error.value.code == "INVALID_PERIOD"
    assert asyncio.run(env.service.get_stats())["totalPrompts"] == 7


def test_from_settings_wires_real_collaborators(settings):
    service = MintingService.from_settings(settings)

    assert service.relayer_address == Account.from_key(settings.private_key).address
    assert isinstance(service._ledger, Web3Ledger)


def test_concurrent_direct_mints_get_distinct_nonces(build_service, user_account):
    env = build_service(ledger=FakeLedger(pending=7))

    async def mint_both():
        return await asyncio.gather(
            env.service.mint_direct("first prompt", reward=1, account=user_account),
            env.service.mint_direct("second prompt", reward=1, account=user_account),
        )

    asyncio.run(mint_both())

    assert sorted(entry["tx"]["nonce"] for entry in env.ledger.sent) == [7, 8]
    assert {entry["signer"] for entry in env.ledger.sent} == {user_account.address}


def test_abandoned_prepare_frees_its_forwarder_nonce_after_deadline(build_service, user_account):
    now = {"value": FIXED_NOW}
    env = build_service(clock=lambda: now["value"])
    asyncio.run(env.service.initialize())

    abandoned = asyncio.run(
        env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10, deadline=FIXED_NOW + 60)
    )
    now["value"] = FIXED_NOW + 61
    retried = asyncio.run(env.service.prepare_meta_transaction(FRANCE, user_account.address, reward=10))

    assert abandoned["typedData"]["message"]["nonce"] == 0
    assert retried["typedData"]["message"]["nonce"] == 0

    typed = retried["typedData"]
    receipt = asyncio.run(env.service.relay_meta_transaction(typed["message"], _sign(user_account, typed)))
    assert receipt.digest == FRANCE_DIGEST


def test_malformed_gateway_signature_never_reaches_ledger(build_service):
    payload = authorization_payload(signature="0xzzzz")
    env = build_service(handler=lambda request: httpx.Response(200, json=payload))
    asyncio.run(env.service.initialize())

    with pytest.raises(GatewayError):
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=10))

    assert env.ledger.sent == []
    text = env.service.metrics().decode("utf-8")
    assert 'mint_requests_total{mode="operator",outcome="GATEWAY_ERROR"} 1.0' in text


def test_lost_receipt_connection_is_classified(build_service):
    env = build_service(ledger=FakeLedger(receipt_error=ConnectionError("connection reset")))
    asyncio.run(env.service.initialize())

    with pytest.raises(LedgerUnavailable):
        asyncio.run(env.service.mint_for(FRANCE, BENEFICIARY, reward=10))

    assert len(env.ledger.sent) == 1
