"""
Exception hierarchy for the Teen Patti ZK proof pipeline
"""


class ZKError(Exception):
    """Base exception for ZK operations"""
    pass


# ============================================================================
# INPUT VALIDATION
# ============================================================================


class ZKValidationError(ZKError, ValueError):
    """Malformed input rejected before any expensive call"""
    pass


class FieldError(ZKValidationError):
    """Value cannot be represented as a field element"""
    pass


class InvalidCardError(ZKValidationError):
    """Card rank or suit out of range"""
    pass


class CommitmentError(ZKValidationError):
    """Deck commitment inputs are inconsistent"""
    pass


class InvalidCircuitInputError(ZKValidationError):
    """Circuit input record failed validation"""
    pass


# ============================================================================
# INITIALIZATION / PROVING
# ============================================================================


class BackendInitializationError(ZKError):
    """Cryptographic library could not be initialized"""
    pass


class CircuitLoadError(ZKError):
    """Circuit artifact could not be fetched or bound to a backend"""
    pass


class ProofGenerationError(ZKError):
    """Witness execution or proving failed"""
    pass


# ============================================================================
# AGGREGATOR NETWORK
# ============================================================================


class AggregatorError(ZKError):
    """Aggregator API request failed"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class AggregatorNotConfiguredError(AggregatorError):
    """No API key configured for the aggregator"""
    pass


class AggregatorVerificationFailed(AggregatorError):
    """Aggregator reported the job as Failed"""

    def __init__(self, message: str, job=None):
        super().__init__(message)
        self.job = job


class AggregatorTimeoutError(AggregatorError):
    """Job did not reach a terminal state within the polling cap"""

    def __init__(self, message: str, job=None):
        super().__init__(message)
        self.job = job


class AggregatorCancelledError(AggregatorError):
    """Polling stopped by the caller before a terminal state"""
    pass


# ============================================================================
# ON-CHAIN
# ============================================================================


class OnChainError(ZKError):
    """On-chain call or transaction failed"""
    pass


class TransactionRejectedError(OnChainError):
    """Signer declined to sign the transaction"""
    pass


# ============================================================================
# HASHING
# ============================================================================


class HashingError(ZKError):
    """Field hash through the cryptographic library failed"""
    pass
