from importlib import import_module

modules = [
    'batches',
    'verification',
    'ledger',
    'sync',
    'companies',
    'analytics',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
