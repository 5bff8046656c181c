"""
Aggregator network client
=========================
REST client for a Kurier-style proof verification aggregator: verification
key registration, proof submission, job polling and health checks.

Job states advance monotonically:

    Queued -> Valid -> Submitted -> IncludedInBlock
           -> Finalized | AggregationPending -> Aggregated -> AggregationPublished
    (any) -> Failed

Finalized, Aggregated and AggregationPublished are success terminals, Failed is
the failure terminal; every other state keeps the poll going.
"""

import asyncio
import functools
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import requests

from config import AggregatorConfig

from .errors import (
    AggregatorCancelledError,
    AggregatorError,
    AggregatorNotConfiguredError,
    AggregatorTimeoutError,
    AggregatorVerificationFailed,
    ZKError,
)
from .field import bytes_to_hex, field_to_hex
from .types import CircuitName, ZKProof

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "Queued"
    VALID = "Valid"
    SUBMITTED = "Submitted"
    INCLUDED_IN_BLOCK = "IncludedInBlock"
    FINALIZED = "Finalized"
    AGGREGATION_PENDING = "AggregationPending"
    AGGREGATED = "Aggregated"
    AGGREGATION_PUBLISHED = "AggregationPublished"
    FAILED = "Failed"


SUCCESS_STATUSES = frozenset({
    JobStatus.FINALIZED.value,
    JobStatus.AGGREGATED.value,
    JobStatus.AGGREGATION_PUBLISHED.value,
})

TERMINAL_STATUSES = SUCCESS_STATUSES | {JobStatus.FAILED.value}

_STATUS_ORDER = {
    JobStatus.QUEUED.value: 0,
    JobStatus.VALID.value: 1,
    JobStatus.SUBMITTED.value: 2,
    JobStatus.INCLUDED_IN_BLOCK.value: 3,
    JobStatus.FINALIZED.value: 4,
    JobStatus.AGGREGATION_PENDING.value: 5,
    JobStatus.AGGREGATED.value: 6,
    JobStatus.AGGREGATION_PUBLISHED.value: 7,
}


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_success_status(status: str) -> bool:
    return status in SUCCESS_STATUSES


@dataclass
class VerificationJob:
    """Snapshot of one aggregator job"""
    job_id: str
    status: str
    tx_hash: Optional[str] = None
    tx_explorer_url: Optional[str] = None
    attestation_id: Optional[str] = None
    aggregator_url: Optional[str] = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, job_id: str, data: Dict[str, Any]) -> "VerificationJob":
        attestation = data.get('attestationId')
        return cls(
            job_id=str(data.get('jobId') or job_id),
            status=str(data.get('status', JobStatus.QUEUED.value)),
            tx_hash=data.get('txHash'),
            tx_explorer_url=data.get('txExplorerUrl'),
            attestation_id=str(attestation) if attestation is not None else None,
            aggregator_url=data.get('aggregatorUrl'),
            error=data.get('error'),
            raw=data,
        )

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    @property
    def is_success(self) -> bool:
        return is_success_status(self.status)


@dataclass
class SubmitResult:
    job_id: str
    optimistic_verify: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class BatchSubmitResult:
    successful: List[Tuple[str, str]] = field(default_factory=list)  # (circuit, job id)
    failed: List[Tuple[str, str]] = field(default_factory=list)      # (circuit, error)


def _public_signal_hex(value: Any) -> str:
    text = str(value)
    if text.startswith("0x"):
        return text
    return field_to_hex(text)


def _error_message(data: Dict[str, Any], status_code: int) -> str:
    details = "; ".join(
        f"{d.get('path')}: {d.get('message')}" for d in data.get('details') or [] if isinstance(d, dict))
    parts = [data.get('message'), data.get('error'), details, f"HTTP {status_code}"]
    return " - ".join(str(p) for p in parts if p)


class AggregatorClient:
    """Submits proofs to the aggregator and tracks their jobs"""

    def __init__(self,
                 config: Optional[AggregatorConfig] = None,
                 session: Optional[requests.Session] = None,
                 vk_hashes: Optional[Dict[str, str]] = None):
        self.config = config or AggregatorConfig()
        self.session = session or requests.Session()
        self.vk_hashes: Dict[str, str] = dict(vk_hashes or {})

        self._cached_health: Optional[Dict[str, str]] = None
        self._last_health_check = 0.0

        if not self.vk_hashes and self.config.vk_hashes_file and self.config.vk_hashes_file.exists():
            self.load_vk_hashes(self.config.vk_hashes_file)

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    # ------------------------------------------------------------------
    # VK hash registry
    # ------------------------------------------------------------------

    def load_vk_hashes(self, path: Union[str, Path]) -> Dict[str, str]:
        with open(path, 'r') as f:
            data = json.load(f)
        self.vk_hashes.update({str(k): str(v) for k, v in data.items() if v})
        logger.info(f"Loaded VK hashes for: {', '.join(sorted(self.vk_hashes)) or 'none'}")
        return dict(self.vk_hashes)

    def save_vk_hashes(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.vk_hashes, f, indent=2, sort_keys=True)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _require_key(self):
        if not self.is_configured:
            raise AggregatorNotConfiguredError("Aggregator API key is not configured")

    def _url(self, *parts: str) -> str:
        return "/".join([self.config.api_url.rstrip("/")] + [p.strip("/") for p in parts])

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.request(
                method, url, json=payload, timeout=self.config.request_timeout,
                headers={'Content-Type': 'application/json'})
        except requests.RequestException as e:
            raise AggregatorError(f"Aggregator request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {'data': data}

        if not response.ok:
            raise AggregatorError(_error_message(data, response.status_code), status_code=response.status_code)
        return data

    async def _call(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._request, method, url, payload))

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------

    async def register_verification_key(self, circuit: Union[str, CircuitName], vk: bytes) -> str:
        """One-time registration per circuit version; returns the vk hash"""
        self._require_key()
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)

        payload = {
            'proofType': self.config.proof_type,
            'vk': bytes_to_hex(vk),
            'proofOptions': {'variant': self.config.proof_variant},
        }
        logger.info(f"Registering VK for {name} ({len(vk)} bytes)")
        data = await self._call('POST', self._url('register-vk', self.config.api_key), payload)

        vk_hash = data.get('vkHash') or (data.get('meta') or {}).get('vkHash')
        if not vk_hash:
            raise AggregatorError(f"VK registration for {name} returned no hash")

        self.vk_hashes[name] = vk_hash
        logger.info(f"VK registered for {name}: {vk_hash}")
        return vk_hash

    def build_submit_payload(self, circuit: str, proof: ZKProof,
                             vk_registered: Optional[bool] = None,
                             vk_hash: Optional[str] = None) -> Dict[str, Any]:
        registered_hash = self.vk_hashes.get(circuit)
        use_registered = vk_registered if vk_registered is not None else bool(registered_hash)
        effective_hash = vk_hash or registered_hash

        if use_registered and effective_hash:
            vk_field = effective_hash
        elif proof.verification_key:
            vk_field = bytes_to_hex(proof.verification_key)
            use_registered = False
        else:
            raise AggregatorError(f"Verification key is required to submit the {circuit} proof")

        return {
            'proofType': self.config.proof_type,
            'proofOptions': {'variant': self.config.proof_variant},
            'vkRegistered': use_registered,
            'chainId': self.config.chain_id,
            'proofData': {
                'proof': bytes_to_hex(proof.proof),
                'publicSignals': [_public_signal_hex(x) for x in proof.public_inputs],
                'vk': vk_field,
            },
        }

    async def submit_proof(self, circuit: Union[str, CircuitName], proof: ZKProof,
                           vk_registered: Optional[bool] = None,
                           vk_hash: Optional[str] = None) -> SubmitResult:
        self._require_key()
        name = circuit.value if isinstance(circuit, CircuitName) else str(circuit)
        payload = self.build_submit_payload(name, proof, vk_registered, vk_hash)

        logger.info(f"Submitting {name} proof: {len(proof.proof)} bytes, "
                    f"{len(proof.public_inputs)} public signals, vkRegistered={payload['vkRegistered']}")
        data = await self._call('POST', self._url('submit-proof', self.config.api_key), payload)

        job_id = data.get('jobId')
        if not job_id:
            raise AggregatorError(f"Submission of {name} proof returned no job id")

        logger.info(f"{name} proof submitted, job {job_id} (optimistic: {data.get('optimisticVerify')})")
        return SubmitResult(job_id=str(job_id), optimistic_verify=data.get('optimisticVerify'), raw=data)

    async def get_job_status(self, job_id: str) -> VerificationJob:
        self._require_key()
        data = await self._call('GET', self._url('job-status', self.config.api_key, job_id))
        job = VerificationJob.from_response(job_id, data)
        logger.debug(f"Job {job_id}: {job.status}")
        return job

    async def watch_job(self, job_id: str, stop_event: Optional[asyncio.Event] = None) -> AsyncIterator[VerificationJob]:
        """Yield status snapshots until a terminal state, a stop request or the attempt cap"""
        max_attempts = self.config.max_poll_attempts
        last_rank = -1

        for attempt in range(1, max_attempts + 1):
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Stopped watching job {job_id}")
                return

            job = await self.get_job_status(job_id)

            rank = _STATUS_ORDER.get(job.status)
            if rank is not None and rank < last_rank:
                logger.warning(f"Job {job_id} reported {job.status} after a later state; ignoring")
            else:
                if rank is not None:
                    last_rank = rank
                yield job
                if job.is_terminal:
                    return

            if attempt % 10 == 0:
                logger.info(f"Still waiting for job {job_id} ({attempt}/{max_attempts})")

            if attempt == max_attempts:
                break

            if stop_event is None:
                await asyncio.sleep(self.config.poll_interval)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass

        raise AggregatorTimeoutError(
            f"Job {job_id} did not reach a terminal state after {max_attempts} attempts")

    async def wait_for_verification(self, job_id: str, stop_event: Optional[asyncio.Event] = None) -> VerificationJob:
        """Poll to a success terminal; Failed raises immediately"""
        logger.info(f"Waiting for verification of job {job_id}")
        last: Optional[VerificationJob] = None

        async for job in self.watch_job(job_id, stop_event):
            last = job
            if job.is_success:
                logger.info(f"Job {job_id} verified ({job.status})"
                            + (f", tx {job.tx_hash}" if job.tx_hash else ""))
                return job
            if job.status == JobStatus.FAILED.value:
                raise AggregatorVerificationFailed(
                    f"Aggregator verification failed: {job.error or 'Unknown'}", job=job)

        raise AggregatorCancelledError(
            f"Stopped waiting for job {job_id} at status {last.status if last else 'unknown'}")

    async def submit_proofs_batch(self, proofs: Sequence[Tuple[str, ZKProof]]) -> BatchSubmitResult:
        logger.info(f"Submitting batch of {len(proofs)} proofs")
        results = await asyncio.gather(
            *[self.submit_proof(name, proof) for name, proof in proofs], return_exceptions=True)

        batch = BatchSubmitResult()
        for (name, _), result in zip(proofs, results):
            if isinstance(result, SubmitResult):
                batch.successful.append((name, result.job_id))
            elif isinstance(result, Exception):
                batch.failed.append((name, str(result) or type(result).__name__))
            else:
                raise result

        logger.info(f"Batch: {len(batch.successful)} ok, {len(batch.failed)} failed")
        return batch

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _check_health_sync(self) -> Dict[str, str]:
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            response = self.session.get(self._url('status'), timeout=self.config.request_timeout)
        except requests.RequestException as e:
            # Key is configured; a real submission will surface the failure
            logger.warning(f"Aggregator health check failed, assuming available: {e}")
            return {'status': 'healthy', 'version': 'assumed-available', 'timestamp': timestamp}

        if response.ok:
            try:
                version = response.json().get('version') or 'kurier-api'
            except (ValueError, AttributeError):
                version = 'kurier-api'
            return {'status': 'healthy', 'version': str(version), 'timestamp': timestamp}
        return {'status': 'degraded', 'version': 'unknown', 'timestamp': timestamp}

    async def check_health(self) -> Dict[str, str]:
        """Cached for health_cache_seconds"""
        now = time.monotonic()
        if self._cached_health and now - self._last_health_check < self.config.health_cache_seconds:
            return self._cached_health

        if not self.is_configured:
            health = {'status': 'down', 'version': 'not-configured',
                      'timestamp': datetime.now(timezone.utc).isoformat()}
        else:
            loop = asyncio.get_running_loop()
            health = await loop.run_in_executor(None, self._check_health_sync)

        self._cached_health = health
        self._last_health_check = now
        return health

    async def is_available(self) -> bool:
        if not self.is_configured:
            return False
        try:
            health = await self.check_health()
        except ZKError as e:
            logger.warning(f"Aggregator availability check failed: {e}")
            return False
        return health['status'] != 'down'

    def invalidate_health(self):
        self._cached_health = None
        self._last_health_check = 0.0
