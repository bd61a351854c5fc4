import asyncio

import pytest
from eth_abi import decode as abi_decode

from fakes import ACTIVITY_POINTS, CHAIN_ID, FIXED_NOW, GATEWAY_SIGNATURE, PROMPT_MINER, FakeLedger
from prompt_mining.config import ChainConfig
from prompt_mining.contracts import DIRECT_MINT, OPERATOR_MINT, selector
from prompt_mining.errors import (
    AlreadyMinted,
    AuthorizationExpired,
    ForwarderNotTrusted,
    InsufficientFunds,
    InvalidForwardSignature,
    InvalidProof,
    LedgerSubmissionError,
    LedgerUnavailable,
    MetaTxExpired,
    NonceConflict,
    TransactionReverted,
)
from prompt_mining.gateway import AuthorizationProof
from prompt_mining.hashing import encode_reward, hash_content
from prompt_mining.ledger import classify_ledger_error
from prompt_mining.modes import (
    DirectSubmitMode,
    MintAttempt,
    MintState,
    OperatorSignedMode,
    SubmissionContext,
)
from prompt_mining.nonces import NonceAllocator

PROOF = AuthorizationProof(signature=GATEWAY_SIGNATURE, nonce="n-1", expiry=FIXED_NOW + 600)
CONTENT = "What is AI?"
DIGEST = hash_content(CONTENT)


def _context(ledger, relayer, *, seed=7):
    nonces = NonceAllocator()
    nonces.reseed(CHAIN_ID, seed)
    return SubmissionContext(ledger=ledger, nonces=nonces, relayer=relayer, clock=lambda: FIXED_NOW)


def _authorized(mode="direct"):
    attempt = MintAttempt(mode=mode, chain_id=CHAIN_ID, digest=DIGEST)
    attempt.advance(MintState.AUTHORIZED)
    return attempt


def test_attempt_walks_the_happy_path():
    attempt = MintAttempt(mode="direct", chain_id=CHAIN_ID, digest=DIGEST)
    for state in (MintState.AUTHORIZED, MintState.SUBMITTED, MintState.CONFIRMED):
        attempt.advance(state)

    assert attempt.history == [
        MintState.HASHED,
        MintState.AUTHORIZED,
        MintState.SUBMITTED,
        MintState.CONFIRMED,
    ]
    assert attempt.terminal


def test_attempt_rejects_skipping_authorization():
    attempt = MintAttempt(mode="direct", chain_id=CHAIN_ID, digest=DIGEST)
    with pytest.raises(RuntimeError):
        attempt.advance(MintState.SUBMITTED)


def test_failure_is_terminal_and_idempotent():
    attempt = _authorized()
    attempt.fail("QUOTA_EXCEEDED")
    attempt.fail("SOMETHING_ELSE")

    assert attempt.state is MintState.FAILED
    assert attempt.failure == "QUOTA_EXCEEDED"
    assert attempt.terminal
    with pytest.raises(RuntimeError):
        attempt.advance(MintState.SUBMITTED)


def test_confirmed_attempt_cannot_fail():
    attempt = _authorized()
    attempt.advance(MintState.SUBMITTED)
    attempt.advance(MintState.CONFIRMED)
    attempt.fail("LATE")
    assert attempt.state is MintState.CONFIRMED


def test_direct_mode_builds_mint_for_signer(relayer):
    mode = DirectSubmitMode(_context(FakeLedger(), relayer), relayer)
    chain_request = mode.build(_chain(), DIGEST, CONTENT, encode_reward(10), PROOF)

    assert chain_request.to == PROMPT_MINER
    assert chain_request.beneficiary == relayer.address
    assert chain_request.gas == 500_000
    assert chain_request.data[:4] == selector(DIRECT_MINT)
    digest, content, reward, proof = abi_decode(["bytes32", "string", "bytes", "bytes"], chain_request.data[4:])
    assert content == CONTENT
    assert proof == PROOF.signature_bytes


def test_direct_mode_uses_allocator_for_relayer(relayer):
    ledger = FakeLedger(pending=99)
    ctx = _context(ledger, relayer, seed=7)
    mode = DirectSubmitMode(ctx, relayer)
    attempt = _authorized()

    receipt = asyncio.run(mode.submit(attempt, _chain(), CONTENT, encode_reward(10), PROOF))

    assert receipt["status"] == 1
    assert attempt.state is MintState.CONFIRMED
    assert attempt.transaction_hash == receipt["transactionHash"]
    sent = ledger.sent[0]
    assert sent["tx"]["nonce"] == 7
    assert sent["tx"]["from"] == relayer.address
    assert sent["tx"]["chainId"] == CHAIN_ID
    assert sent["signer"] == relayer.address
    assert ctx.nonces.peek(CHAIN_ID) == 8


def test_direct_mode_with_external_account_allocates_from_pending_count(relayer, user_account):
    ledger = FakeLedger(pending=3)
    ctx = _context(ledger, relayer)
    mode = DirectSubmitMode(ctx, user_account)

    asyncio.run(mode.submit(_authorized(), _chain(), CONTENT, encode_reward(10), PROOF))
    asyncio.run(mode.submit(_authorized(), _chain(), CONTENT, encode_reward(10), PROOF))

    assert [entry["tx"]["nonce"] for entry in ledger.sent] == [3, 4]
    assert ledger.sent[0]["signer"] == user_account.address
    assert ctx.nonces.peek(CHAIN_ID) == 7
    assert ctx.nonces.peek((CHAIN_ID, user_account.address)) == 5


def test_pending_count_failure_fails_attempt(relayer, user_account):
    ledger = FakeLedger(seed_error=ConnectionError("rpc down"))
    mode = DirectSubmitMode(_context(ledger, relayer), user_account)
    attempt = _authorized()

    with pytest.raises(LedgerUnavailable):
        asyncio.run(mode.submit(attempt, _chain(), CONTENT, encode_reward(10), PROOF))

    assert attempt.state is MintState.FAILED
    assert ledger.sent == []


def test_operator_mode_encodes_beneficiary(relayer, user_account):
    ledger = FakeLedger()
    mode = OperatorSignedMode(_context(ledger, relayer))
    attempt = _authorized("operator")

    asyncio.run(mode.submit(attempt, _chain(), user_account.address, CONTENT, encode_reward(10), PROOF))

    tx = ledger.sent[0]["tx"]
    data = bytes.fromhex(tx["data"][2:])
    assert data[:4] == selector(OPERATOR_MINT)
    beneficiary = abi_decode(["address", "bytes32", "string", "bytes", "bytes"], data[4:])[0]
    assert beneficiary.lower() == user_account.address.lower()
    assert ledger.sent[0]["signer"] == relayer.address


def test_operator_precheck_rejects_minted_digest(relayer):
    ledger = FakeLedger(minted=[DIGEST])
    mode = OperatorSignedMode(_context(ledger, relayer))
    attempt = MintAttempt(mode="operator", chain_id=CHAIN_ID, digest=DIGEST)

    with pytest.raises(AlreadyMinted):
        asyncio.run(mode.precheck(attempt, _chain()))

    assert attempt.state is MintState.FAILED
    assert ledger.status_queries == [DIGEST]


def test_reverted_receipt_fails_attempt(relayer):
    ledger = FakeLedger(status=0)
    mode = DirectSubmitMode(_context(ledger, relayer), relayer)
    attempt = _authorized()

    with pytest.raises(TransactionReverted):
        asyncio.run(mode.submit(attempt, _chain(), CONTENT, encode_reward(10), PROOF))

    assert attempt.history[-2:] == [MintState.SUBMITTED, MintState.FAILED]
    assert attempt.failure == "TRANSACTION_REVERTED"


def test_lost_connection_during_receipt_wait_fails_attempt(relayer):
    ledger = FakeLedger(receipt_error=ConnectionError("connection reset"))
    mode = DirectSubmitMode(_context(ledger, relayer), relayer)
    attempt = _authorized()

    with pytest.raises(LedgerUnavailable) as excinfo:
        asyncio.run(mode.submit(attempt, _chain(), CONTENT, encode_reward(10), PROOF))

    assert excinfo.value.details == {"transactionHash": attempt.transaction_hash}
    assert attempt.history[-2:] == [MintState.SUBMITTED, MintState.FAILED]
    assert attempt.failure == "LEDGER_UNAVAILABLE"


def test_send_error_is_classified(relayer):
    ledger = FakeLedger(send_error=ValueError({"code": -32000, "message": "nonce too low"}))
    mode = DirectSubmitMode(_context(ledger, relayer), relayer)
    attempt = _authorized()

    with pytest.raises(NonceConflict) as excinfo:
        asyncio.run(mode.submit(attempt, _chain(), CONTENT, encode_reward(10), PROOF))

    assert excinfo.value.retryable
    assert attempt.state is MintState.FAILED
    assert ledger.sent == []


@pytest.mark.parametrize(
    "message, expected",
    [
        ("insufficient funds for gas * price + value", InsufficientFunds),
        ("execution reverted: AUTHORIZATION_EXPIRED", AuthorizationExpired),
        ("execution reverted: invalid signature", InvalidProof),
        ("replacement transaction underpriced", NonceConflict),
        ("execution reverted: prompt already minted", AlreadyMinted),
        ("ERC2771ForwarderExpiredRequest(1700000000)", MetaTxExpired),
        ("ERC2771UntrustfulTarget", ForwarderNotTrusted),
        ("ERC2771ForwarderInvalidSigner", InvalidForwardSignature),
        ("something else entirely", LedgerSubmissionError),
    ],
)
def test_classify_ledger_error(message, expected):
    assert type(classify_ledger_error(RuntimeError(message))) is expected


def test_classify_ledger_error_keeps_classified_errors():
    error = AlreadyMinted()
    assert classify_ledger_error(error) is error


def _chain():
    return ChainConfig(
        chain_id=CHAIN_ID,
        rpc_url="http://127.0.0.1:8545",
        prompt_miner=PROMPT_MINER,
        activity_points=ACTIVITY_POINTS,
    )
