"""Inference Stack - install, tune and launch local inference runtimes."""

try:
    from inference_stack._version import version as __version__
except ImportError:
    __version__ = "0.0.0.dev0"
