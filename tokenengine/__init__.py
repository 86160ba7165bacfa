"""Property tokenization, trading and revenue distribution engine."""

from tokenengine._version import VERSION

__version__ = VERSION
