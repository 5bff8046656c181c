"""
Verification Orchestrator
=========================
Runs the local -> aggregator -> on-chain pipeline. Each layer is toggled
independently and reports its own result record; a proof that fails local
verification is not sent to the other layers.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from .aggregator import AggregatorClient
from .errors import (
    AggregatorCancelledError,
    AggregatorTimeoutError,
    AggregatorVerificationFailed,
)
from .onchain import OnChainVerifier, TransactionSigner
from .proof_service import ProofService
from .types import CircuitName, VerificationResult, ZKProof

logger = logging.getLogger(__name__)


@dataclass
class VerificationOptions:
    local: bool = True
    aggregator: bool = False
    on_chain: bool = False
    wait_for_aggregator: bool = False  # poll the job to a terminal state
    record_on_chain: bool = False      # transaction instead of a view call


@dataclass
class LocalLayerResult:
    verified: bool
    time_ms: int
    error: Optional[str] = None


@dataclass
class AggregatorLayerResult:
    submitted: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    optimistic_verify: Optional[str] = None
    tx_hash: Optional[str] = None
    attestation_id: Optional[str] = None
    timed_out: bool = False
    cancelled: bool = False
    error: Optional[str] = None


@dataclass
class OnChainLayerResult:
    verified: bool
    error: Optional[str] = None
    rejected: bool = False
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None


@dataclass
class ComprehensiveVerificationResult:
    circuit: str
    local: Optional[LocalLayerResult] = None
    aggregator: Optional[AggregatorLayerResult] = None
    on_chain: Optional[OnChainLayerResult] = None

    @property
    def passed(self) -> bool:
        """True when every layer that ran succeeded"""
        if self.local is not None and not self.local.verified:
            return False
        if self.aggregator is not None and (not self.aggregator.submitted or self.aggregator.error):
            return False
        if self.on_chain is not None and not self.on_chain.verified:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'circuit': self.circuit,
            'local': asdict(self.local) if self.local else None,
            'aggregator': asdict(self.aggregator) if self.aggregator else None,
            'on_chain': asdict(self.on_chain) if self.on_chain else None,
            'passed': self.passed,
        }


class VerificationOrchestrator:
    """Multi-layer proof verification"""

    def __init__(self,
                 proof_service: ProofService,
                 aggregator: Optional[AggregatorClient] = None,
                 onchain: Optional[OnChainVerifier] = None,
                 signer: Optional[TransactionSigner] = None):
        self.proof_service = proof_service
        self.aggregator = aggregator
        self.onchain = onchain
        self.signer = signer

    async def verify_locally(self, circuit: Union[str, CircuitName], proof: ZKProof) -> VerificationResult:
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        if name not in {c.value for c in CircuitName}:
            return VerificationResult(valid=False, error=f"Unknown circuit: {name}")
        return await self.proof_service.verify_proof_locally(name, proof)

    async def _aggregator_layer(self, circuit: str, proof: ZKProof, options: VerificationOptions,
                                stop_event: Optional[asyncio.Event]) -> AggregatorLayerResult:
        try:
            if self.aggregator is None or not await self.aggregator.is_available():
                return AggregatorLayerResult(submitted=False, error='Aggregator not configured or unavailable')

            submitted = await self.aggregator.submit_proof(circuit, proof)
        except Exception as e:
            logger.error(f"Aggregator submission of {circuit} proof failed: {e}")
            return AggregatorLayerResult(submitted=False, error=str(e) or 'Aggregator submission failed')

        layer = AggregatorLayerResult(
            submitted=True,
            job_id=submitted.job_id,
            status='Queued',
            optimistic_verify=submitted.optimistic_verify,
        )
        if not options.wait_for_aggregator:
            return layer

        try:
            job = await self.aggregator.wait_for_verification(submitted.job_id, stop_event)
        except AggregatorVerificationFailed as e:
            layer.status = 'Failed'
            layer.error = str(e)
        except AggregatorTimeoutError as e:
            layer.timed_out = True
            layer.error = str(e)
        except AggregatorCancelledError as e:
            layer.cancelled = True
            layer.error = str(e)
        except Exception as e:
            logger.error(f"Polling job {submitted.job_id} failed: {e}")
            layer.error = str(e) or 'Aggregator polling failed'
        else:
            layer.status = job.status
            layer.tx_hash = job.tx_hash
            layer.attestation_id = job.attestation_id
        return layer

    async def _on_chain_layer(self, circuit: str, proof: ZKProof,
                              options: VerificationOptions) -> OnChainLayerResult:
        if self.onchain is None:
            return OnChainLayerResult(verified=False, error='On-chain verifier not configured')
        try:
            if options.record_on_chain:
                result = await self.onchain.verify_on_chain_with_transaction(circuit, proof, self.signer)
            else:
                result = await self.onchain.verify_on_chain(circuit, proof)
        except Exception as e:
            logger.error(f"On-chain verification of {circuit} proof failed: {e}")
            return OnChainLayerResult(verified=False, error=str(e) or 'On-chain verification failed')

        return OnChainLayerResult(
            verified=result.verified,
            error=result.error,
            rejected=result.rejected,
            tx_hash=result.tx_hash,
            gas_used=result.gas_used,
        )

    async def verify_comprehensive(self, circuit: Union[str, CircuitName], proof: ZKProof,
                                   options: Optional[VerificationOptions] = None,
                                   stop_event: Optional[asyncio.Event] = None) -> ComprehensiveVerificationResult:
        options = options or VerificationOptions()
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        result = ComprehensiveVerificationResult(circuit=name)

        if options.local:
            start = time.time()
            local = await self.verify_locally(name, proof)
            result.local = LocalLayerResult(
                verified=local.valid,
                time_ms=int(round((time.time() - start) * 1000)),
                error=local.error,
            )
            if not local.valid:
                logger.error(f"{name} failed local verification, skipping other layers")
                return result

        if options.aggregator:
            result.aggregator = await self._aggregator_layer(name, proof, options, stop_event)

        if options.on_chain:
            result.on_chain = await self._on_chain_layer(name, proof, options)

        logger.info(
            f"{name} verification: local={result.local.verified if result.local else '-'} "
            f"aggregator={result.aggregator.submitted if result.aggregator else '-'} "
            f"on_chain={result.on_chain.verified if result.on_chain else '-'}")
        return result

    async def verify_full(self, circuit: Union[str, CircuitName], proof: ZKProof) -> ComprehensiveVerificationResult:
        return await self.verify_comprehensive(
            circuit, proof, VerificationOptions(local=True, aggregator=True, on_chain=True))
