"""
Dictionary Codec Module
"""
from .dictionary import (
    Dictionary,
    DictionaryCodec,
    build_dictionary,
    encode,
    decode,
    encode_page,
    decode_page,
    save_dictionary,
    load_dictionary,
    iter_records,
    stringify,
)

__all__ = [
    "Dictionary",
    "DictionaryCodec",
    "build_dictionary",
    "encode",
    "decode",
    "encode_page",
    "decode_page",
    "save_dictionary",
    "load_dictionary",
    "iter_records",
    "stringify",
]
