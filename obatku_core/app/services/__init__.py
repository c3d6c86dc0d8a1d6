"""
Services package initialization.
Business logic layer for medicine QR code allocation and scanning.
"""

from .errors import (
    QRCodeError,
    MalformedCode,
    SequenceExhausted,
    InvalidBulkQuantity,
    DuplicateClassification,
    ClassificationNotFound,
    ClassificationInactive,
    CodeNotFound,
    BatchNotFound,
    InsufficientStock,
    InvalidStateTransition,
    ConcurrencyConflict,
)
from .code_format import ClassificationKey, DecodedCode, FormatValidation
from .sequence_allocator import SequenceAllocator
from .master_registry import MasterRegistry
from .inventory_gateway import InventoryGateway, SqlInventoryGateway, BatchSnapshot
from .code_generator import CodeGenerator, GenerationResult
from .scan_processor import ScanProcessor, ScanOutcome
from .code_queries import QRCodeQueryService

__all__ = [
    'QRCodeError',
    'MalformedCode',
    'SequenceExhausted',
    'InvalidBulkQuantity',
    'DuplicateClassification',
    'ClassificationNotFound',
    'ClassificationInactive',
    'CodeNotFound',
    'BatchNotFound',
    'InsufficientStock',
    'InvalidStateTransition',
    'ConcurrencyConflict',
    'ClassificationKey',
    'DecodedCode',
    'FormatValidation',
    'SequenceAllocator',
    'MasterRegistry',
    'InventoryGateway',
    'SqlInventoryGateway',
    'BatchSnapshot',
    'CodeGenerator',
    'GenerationResult',
    'ScanProcessor',
    'ScanOutcome',
    'QRCodeQueryService',
]
