"""Yutani protocol compiler."""

from .compiler import SchemaSource as SchemaSource
from .compiler import compile_protocols as compile_protocols
from .compiler import load as load
from .errors import *
from .ir import ProtocolSet as ProtocolSet
from .parser import parse as parse
from .parser import parse_toml as parse_toml
from .python import GeneratorOptions as GeneratorOptions
from .resolver import resolve as resolve
from .sizes import MessageSizeInfo as MessageSizeInfo
from .sizes import ProtocolSizeInfo as ProtocolSizeInfo
from .sizes import SizeCalculator as SizeCalculator
from .sizes import SizeInfo as SizeInfo
from .sizes import SizeKind as SizeKind
from .sizes import calculate_sizes as calculate_sizes
from .types import *
