"""Project identity strings shared by the CLI and rendered reports."""

__codename__ = "SUMMON"
__version__ = "0.3.0"
__tagline__ = "Mention it. Ship it."

BANNER = r"""
  ____  _   _ __  __ __  __  ___  _   _
 / ___|| | | |  \/  |  \/  |/ _ \| \ | |
 \___ \| | | | |\/| | |\/| | | | |  \| |
  ___) | |_| | |  | | |  | | |_| | |\  |
 |____/ \___/|_|  |_|_|  |_|\___/|_| \_|
"""
