from .linker import LinkingResult, TransactionLinker

__all__ = [
    'LinkingResult',
    'TransactionLinker',
]
