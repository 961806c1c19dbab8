"""
Integer map keys of the C-DNS format (RFC 8618 section 7).

Every map type has its OWN key space: the same number means different
things in different maps, so keys are grouped per map type and never
shared. Negative keys are reserved for private extensions.
"""

FILE_TYPE_ID = "C-DNS"
FILE_ARRAY_LENGTH = 3


class FilePreambleKeys:
    MAJOR_FORMAT_VERSION = 0
    MINOR_FORMAT_VERSION = 1
    PRIVATE_VERSION = 2
    BLOCK_PARAMETERS = 3


class BlockParametersKeys:
    STORAGE_PARAMETERS = 0
    COLLECTION_PARAMETERS = 1


class StorageParametersKeys:
    TICKS_PER_SECOND = 0
    MAX_BLOCK_ITEMS = 1
    STORAGE_HINTS = 2
    OPCODES = 3
    RR_TYPES = 4
    STORAGE_FLAGS = 5
    CLIENT_ADDRESS_PREFIX_IPV4 = 6
    CLIENT_ADDRESS_PREFIX_IPV6 = 7
    SERVER_ADDRESS_PREFIX_IPV4 = 8
    SERVER_ADDRESS_PREFIX_IPV6 = 9
    SAMPLING_METHOD = 10
    ANONYMIZATION_METHOD = 11


class StorageHintsKeys:
    QUERY_RESPONSE_HINTS = 0
    QUERY_RESPONSE_SIGNATURE_HINTS = 1
    RR_HINTS = 2
    OTHER_DATA_HINTS = 3


class CollectionParametersKeys:
    QUERY_TIMEOUT = 0
    SKEW_TIMEOUT = 1
    SNAPLEN = 2
    PROMISC = 3
    INTERFACES = 4
    SERVER_ADDRESSES = 5
    VLAN_IDS = 6
    FILTER = 7
    GENERATOR_ID = 8
    HOST_ID = 9


class BlockKeys:
    BLOCK_PREAMBLE = 0
    BLOCK_STATISTICS = 1
    BLOCK_TABLES = 2
    QUERY_RESPONSES = 3
    ADDRESS_EVENT_COUNTS = 4
    MALFORMED_MESSAGES = 5


class BlockPreambleKeys:
    EARLIEST_TIME = 0
    BLOCK_PARAMETERS_INDEX = 1


class BlockStatisticsKeys:
    PROCESSED_MESSAGES = 0
    QR_DATA_ITEMS = 1
    UNMATCHED_QUERIES = 2
    UNMATCHED_RESPONSES = 3
    DISCARDED_OPCODE = 4
    MALFORMED_ITEMS = 5


class BlockTablesKeys:
    IP_ADDRESS = 0
    CLASSTYPE = 1
    NAME_RDATA = 2
    QR_SIG = 3
    QLIST = 4
    QRR = 5
    RRLIST = 6
    RR = 7
    MALFORMED_MESSAGE_DATA = 8


class ClassTypeKeys:
    TYPE = 0
    CLASS = 1


class QueryResponseSignatureKeys:
    SERVER_ADDRESS_INDEX = 0
    SERVER_PORT = 1
    QR_TRANSPORT_FLAGS = 2
    QR_TYPE = 3
    QR_SIG_FLAGS = 4
    QUERY_OPCODE = 5
    QR_DNS_FLAGS = 6
    QUERY_RCODE = 7
    QUERY_CLASSTYPE_INDEX = 8
    QUERY_QDCOUNT = 9
    QUERY_ANCOUNT = 10
    QUERY_NSCOUNT = 11
    QUERY_ARCOUNT = 12
    QUERY_EDNS_VERSION = 13
    QUERY_UDP_SIZE = 14
    QUERY_OPT_RDATA_INDEX = 15
    RESPONSE_RCODE = 16


class QuestionKeys:
    NAME_INDEX = 0
    CLASSTYPE_INDEX = 1


class RRKeys:
    NAME_INDEX = 0
    CLASSTYPE_INDEX = 1
    TTL = 2
    RDATA_INDEX = 3


class MalformedMessageDataKeys:
    SERVER_ADDRESS_INDEX = 0
    SERVER_PORT = 1
    MM_TRANSPORT_FLAGS = 2
    MM_PAYLOAD = 3


class QueryResponseKeys:
    TIME_OFFSET = 0
    CLIENT_ADDRESS_INDEX = 1
    CLIENT_PORT = 2
    TRANSACTION_ID = 3
    QR_SIGNATURE_INDEX = 4
    CLIENT_HOPLIMIT = 5
    RESPONSE_DELAY = 6
    QUERY_NAME_INDEX = 7
    QUERY_SIZE = 8
    RESPONSE_SIZE = 9
    RESPONSE_PROCESSING_DATA = 10
    QUERY_EXTENDED = 11
    RESPONSE_EXTENDED = 12


class ResponseProcessingDataKeys:
    BAILIWICK_INDEX = 0
    PROCESSING_FLAGS = 1


class QueryResponseExtendedKeys:
    QUESTION_INDEX = 0
    ANSWER_INDEX = 1
    AUTHORITY_INDEX = 2
    ADDITIONAL_INDEX = 3


class AddressEventCountKeys:
    AE_TYPE = 0
    AE_CODE = 1
    AE_ADDRESS_INDEX = 2
    AE_TRANSPORT_FLAGS = 3
    AE_COUNT = 4


class MalformedMessageKeys:
    TIME_OFFSET = 0
    CLIENT_ADDRESS_INDEX = 1
    CLIENT_PORT = 2
    MESSAGE_DATA_INDEX = 3


def known_keys(keys_cls) -> frozenset:
    """All key values defined on a *Keys class."""
    return frozenset(value for name, value in vars(keys_cls).items()
                     if name.isupper() and isinstance(value, int))
