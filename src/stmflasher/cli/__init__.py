"""
STM Flasher Command-Line Interface
==================================

- **stmflash**: read, write, erase and protect STM32 memory through the
  serial bootloader

The tool is a Click-based CLI application with comprehensive help and
error reporting.
"""

__all__ = ["stmflash"]
