"""
XDEX Exchange Package

Core imports are lazily loaded so that importing a submodule does not pull
in the whole engine.
For direct module access, import from submodules:

    from xdex.exchange import AMMFactory, LiquidityPool
    from xdex.tokens import XToken, TokenRegistry
    from xdex.config import load_config
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'AMMFactory':
        from .exchange import AMMFactory
        return AMMFactory
    elif name == 'LiquidityPool':
        from .exchange import LiquidityPool
        return LiquidityPool
    elif name == 'XToken':
        from .tokens import XToken
        return XToken
    elif name == 'TokenRegistry':
        from .tokens import TokenRegistry
        return TokenRegistry
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'xdex' has no attribute {name!r}")

__all__ = ['AMMFactory', 'LiquidityPool', 'XToken', 'TokenRegistry', 'load_config']
