"""
On-chain verification
=====================
Read-only calls against the deployed UltraHonk verifier contracts, the
transaction variant that records a verification on chain, and proof-carrying
calls into the game contract. Transaction signing is delegated to an injected
TransactionSigner.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from config import OnChainConfig

from .errors import OnChainError, TransactionRejectedError
from .field import bytes_to_hex, field_to_hex
from .types import CircuitName, ZKProof

logger = logging.getLogger(__name__)

# Shared by ShuffleVerifier, DealVerifier and ShowVerifier
VERIFIER_ABI = [
    {
        'name': 'verify',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [
            {'name': '_proof', 'type': 'bytes'},
            {'name': '_publicInputs', 'type': 'bytes32[]'},
        ],
        'outputs': [{'name': '', 'type': 'bool'}],
    },
]

GAME_ABI = [
    {
        'name': 'startGameWithProof',
        'type': 'function',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'roomId', 'type': 'bytes32'},
            {'name': 'deckCommitment', 'type': 'bytes32'},
            {'name': 'proof', 'type': 'bytes'},
            {'name': 'publicInputs', 'type': 'bytes32[]'},
        ],
        'outputs': [],
    },
    {
        'name': 'verifyDeal',
        'type': 'function',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'roomId', 'type': 'bytes32'},
            {'name': 'proof', 'type': 'bytes'},
            {'name': 'publicInputs', 'type': 'bytes32[]'},
        ],
        'outputs': [],
    },
    {
        'name': 'showHand',
        'type': 'function',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'roomId', 'type': 'bytes32'},
            {'name': 'proof', 'type': 'bytes'},
            {'name': 'publicInputs', 'type': 'bytes32[]'},
        ],
        'outputs': [],
    },
]

VERIFIER_KEYS = {
    CircuitName.SHUFFLE.value: 'ShuffleVerifier',
    CircuitName.DEAL.value: 'DealVerifier',
    CircuitName.SHOW.value: 'ShowVerifier',
}
GAME_KEY = 'TeenPattiGame'

REJECTED_BY_USER = 'Transaction rejected by user'


@dataclass
class OnChainResult:
    verified: bool
    error: Optional[str] = None
    rejected: bool = False
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None


@dataclass
class GameTxResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


def format_proof_for_contract(proof: ZKProof) -> Tuple[str, List[str]]:
    """Proof bytes as 0x hex, public inputs as left-padded bytes32 words"""
    proof_bytes = bytes_to_hex(proof.proof)

    public_inputs = []
    for value in proof.public_inputs:
        text = str(value)
        if text[:2].lower() == '0x':
            public_inputs.append('0x' + text[2:].lower().rjust(64, '0'))
        else:
            public_inputs.append(field_to_hex(text))
    return proof_bytes, public_inputs


def to_bytes32(value: Union[int, str, bytes]) -> str:
    """Room ids and roots as 0x-prefixed 32-byte words (not limited to the field)"""
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    elif isinstance(value, str) and value[:2].lower() == '0x':
        text = value[2:].lower()
    else:
        number = int(value)
        if number < 0:
            raise OnChainError(f"Negative bytes32 value: {value!r}")
        text = format(number, 'x')
    if len(text) > 64:
        raise OnChainError(f"Value does not fit in bytes32: {value!r}")
    return '0x' + text.rjust(64, '0')


def load_deployment_addresses(path: Union[str, Path], network: str = 'baseSepolia',
                              fallback_network: Optional[str] = 'hardhat') -> Dict[str, str]:
    """Contract addresses of the first deployed network found"""
    path = Path(path)
    if not path.exists():
        logger.warning(f"No deployment file at {path}")
        return {}

    with open(path, 'r') as f:
        deployments = json.load(f)

    for name in (network, fallback_network):
        if name and deployments.get(name):
            logger.info(f"Using {name} contract addresses from {path}")
            return dict(deployments[name])
    return {}


def _short_error(error: Exception) -> str:
    if isinstance(error, ContractLogicError):
        return getattr(error, 'message', None) or str(error) or 'Execution reverted'
    return str(error) or type(error).__name__


def _is_user_rejection(error: Exception) -> bool:
    return isinstance(error, TransactionRejectedError) or 'user rejected' in str(error).lower()

# ============================================================================
# SIGNERS
# ============================================================================


class TransactionSigner(ABC):
    """Signs transactions on behalf of one account"""

    @property
    @abstractmethod
    def address(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        """Raw signed transaction; raises TransactionRejectedError when declined"""
        raise NotImplementedError


class LocalAccountSigner(TransactionSigner):
    """Signs with a private key held in process"""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(tx)
        raw = getattr(signed, 'raw_transaction', None) or getattr(signed, 'rawTransaction', None)
        if raw is None:
            raise OnChainError('Signed transaction has no raw payload')
        return bytes(raw)

# ============================================================================
# VERIFIER CLIENT
# ============================================================================


class OnChainVerifier:
    """Verifier and game contract client over web3"""

    def __init__(self, config: Optional[OnChainConfig] = None, w3: Optional[Web3] = None,
                 addresses: Optional[Dict[str, str]] = None):
        self.config = config or OnChainConfig()
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.config.rpc_url))
        if addresses is None:
            addresses = load_deployment_addresses(
                self.config.addresses_file, self.config.network, self.config.fallback_network)
        self.addresses = addresses

    def verifier_address(self, circuit: Union[str, CircuitName]) -> Optional[str]:
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        key = VERIFIER_KEYS.get(name)
        return self.addresses.get(key) if key else None

    def _contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def _run(self, func: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Read-only verification
    # ------------------------------------------------------------------

    def _verify_sync(self, address: str, proof: ZKProof) -> bool:
        proof_bytes, public_inputs = format_proof_for_contract(proof)
        contract = self._contract(address, VERIFIER_ABI)
        return bool(contract.functions.verify(proof_bytes, public_inputs).call())

    async def verify_on_chain(self, circuit: Union[str, CircuitName], proof: ZKProof) -> OnChainResult:
        """view call; never raises"""
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        address = self.verifier_address(name)
        if not address:
            return OnChainResult(verified=False, error=f"No {name} verifier address deployed")

        logger.info(f"Verifying {name} proof at {address} ({len(proof.proof)} bytes, "
                    f"{len(proof.public_inputs)} public inputs)")
        try:
            verified = await self._run(self._verify_sync, address, proof)
        except Exception as e:
            logger.error(f"On-chain {name} verification failed: {e}")
            return OnChainResult(verified=False, error=_short_error(e))

        logger.info(f"On-chain {name} verification: {verified}")
        return OnChainResult(verified=verified)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _wait_for_receipt(self, tx_hash) -> Dict[str, Any]:
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.receipt_timeout)

        deadline = time.time() + self.config.receipt_timeout
        while self.config.confirmations > 1:
            confirmed = self.w3.eth.block_number - receipt['blockNumber'] + 1
            if confirmed >= self.config.confirmations:
                break
            if time.time() > deadline:
                raise TimeExhausted(f"Only {confirmed} confirmations for {tx_hash.hex()}")
            time.sleep(2)
        return receipt

    def _transact_sync(self, fn_call, signer: TransactionSigner) -> Tuple[str, Dict[str, Any]]:
        # Simulate first so a failing call costs no gas
        fn_call.call({'from': signer.address})

        tx = fn_call.build_transaction({
            'from': signer.address,
            'nonce': self.w3.eth.get_transaction_count(signer.address, 'pending'),
            'chainId': self.w3.eth.chain_id,
        })
        raw = signer.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(raw)
        logger.info(f"Transaction submitted: {Web3.to_hex(tx_hash)}")

        receipt = self._wait_for_receipt(tx_hash)
        return Web3.to_hex(tx_hash), receipt

    async def verify_on_chain_with_transaction(self, circuit: Union[str, CircuitName], proof: ZKProof,
                                               signer: Optional[TransactionSigner]) -> OnChainResult:
        """Records the verification in a transaction; a reverted receipt is verified=False"""
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        address = self.verifier_address(name)
        if not address:
            return OnChainResult(verified=False, error=f"No {name} verifier address deployed")
        if signer is None:
            return OnChainResult(verified=False, error='No signer configured')

        proof_bytes, public_inputs = format_proof_for_contract(proof)
        try:
            fn_call = self._contract(address, VERIFIER_ABI).functions.verify(proof_bytes, public_inputs)
            tx_hash, receipt = await self._run(self._transact_sync, fn_call, signer)
        except Exception as e:
            if _is_user_rejection(e):
                logger.info(f"{name} verification transaction rejected by signer")
                return OnChainResult(verified=False, error=REJECTED_BY_USER, rejected=True)
            logger.error(f"{name} transaction verification failed: {e}")
            return OnChainResult(verified=False, error=_short_error(e))

        verified = receipt['status'] == 1
        gas_used = receipt.get('gasUsed')
        logger.info(f"Transaction {'confirmed' if verified else 'reverted'}: {tx_hash} (gas {gas_used})")
        return OnChainResult(
            verified=verified,
            error=None if verified else 'Transaction reverted',
            tx_hash=tx_hash,
            gas_used=gas_used,
        )

    # ------------------------------------------------------------------
    # Game contract
    # ------------------------------------------------------------------

    async def _submit_game_call(self, label: str, fn_name: str, args: List[Any],
                                signer: TransactionSigner) -> GameTxResult:
        game_address = self.addresses.get(GAME_KEY)
        if not game_address:
            return GameTxResult(success=False, error='No game contract address deployed')

        try:
            fn_call = getattr(self._contract(game_address, GAME_ABI).functions, fn_name)(*args)
            tx_hash, receipt = await self._run(self._transact_sync, fn_call, signer)
        except Exception as e:
            if _is_user_rejection(e):
                return GameTxResult(success=False, error=REJECTED_BY_USER)
            logger.error(f"{label} proof submission failed: {e}")
            return GameTxResult(success=False, error=_short_error(e))

        if receipt['status'] != 1:
            return GameTxResult(success=False, tx_hash=tx_hash, error='Transaction reverted')

        logger.info(f"{label} proof confirmed in {tx_hash}")
        return GameTxResult(success=True, tx_hash=tx_hash)

    async def submit_shuffle_proof(self, signer: TransactionSigner, room_id: Union[int, str, bytes],
                                   deck_commitment: Union[int, str], proof: ZKProof) -> GameTxResult:
        proof_bytes, public_inputs = format_proof_for_contract(proof)
        return await self._submit_game_call(
            'Shuffle', 'startGameWithProof',
            [to_bytes32(room_id), to_bytes32(deck_commitment), proof_bytes, public_inputs], signer)

    async def submit_deal_proof(self, signer: TransactionSigner, room_id: Union[int, str, bytes],
                                proof: ZKProof) -> GameTxResult:
        proof_bytes, public_inputs = format_proof_for_contract(proof)
        return await self._submit_game_call(
            'Deal', 'verifyDeal', [to_bytes32(room_id), proof_bytes, public_inputs], signer)

    async def submit_show_proof(self, signer: TransactionSigner, room_id: Union[int, str, bytes],
                                proof: ZKProof) -> GameTxResult:
        proof_bytes, public_inputs = format_proof_for_contract(proof)
        return await self._submit_game_call(
            'Show', 'showHand', [to_bytes32(room_id), proof_bytes, public_inputs], signer)
