"""Format parsers.

Each parser turns one file format into ``Feature`` objects plus
per-entity ``ParseWarning`` diagnostics.  Use ``factory.get_parser``
to select a parser by extension rather than importing one directly.
"""

from geo_loader.parsers.base import ParseResult, Parser, ParseStream
from geo_loader.parsers.factory import check_file_size, detect_format, get_parser, list_parsers, register_parser

__all__ = [
    "ParseResult",
    "ParseStream",
    "Parser",
    "check_file_size",
    "detect_format",
    "get_parser",
    "list_parsers",
    "register_parser",
]
