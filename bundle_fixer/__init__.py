"""bundle-fixer.

A small packaging utility that makes a macOS ``.app`` bundle self-contained:
it copies externally linked libraries into ``Contents/Frameworks`` and
rewrites every absolute library reference to an ``@rpath`` form.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
