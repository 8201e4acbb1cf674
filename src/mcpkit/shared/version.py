from mcpkit.types import PROTOCOL_VERSION

SUPPORTED_PROTOCOL_VERSIONS: list[str] = [PROTOCOL_VERSION]
