"""QueryTorque DAX performance templates.

Jinja2 templates for optimization report generation.
"""

from pathlib import Path

TEMPLATE_DIR = Path(__file__).parent

__all__ = ["TEMPLATE_DIR"]
