"""
C-DNS data models.
"""

from .flags import FlagEnumeration, FlagSet
from .records import (
    NOT_COLLECTED,
    AddressEventCount,
    AddressEventType,
    ClassType,
    MalformedMessage,
    MalformedMessageData,
    MessageSections,
    Question,
    QueryResponse,
    QueryResponseType,
    QuerySignature,
    ResourceRecord,
    ResponseProcessingData,
    Timestamp,
    Transport,
    TransportFlags,
    is_present,
)
from .parameters import (
    BlockParameters,
    CollectionParameters,
    FilePreamble,
    StorageHints,
    StorageParameters,
)
from .block import Block, BlockPreamble, BlockStatistics

__all__ = [
    'FlagEnumeration',
    'FlagSet',
    'NOT_COLLECTED',
    'AddressEventCount',
    'AddressEventType',
    'ClassType',
    'MalformedMessage',
    'MalformedMessageData',
    'MessageSections',
    'Question',
    'QueryResponse',
    'QueryResponseType',
    'QuerySignature',
    'ResourceRecord',
    'ResponseProcessingData',
    'Timestamp',
    'Transport',
    'TransportFlags',
    'is_present',
    'BlockParameters',
    'CollectionParameters',
    'FilePreamble',
    'StorageHints',
    'StorageParameters',
    'Block',
    'BlockPreamble',
    'BlockStatistics',
]
