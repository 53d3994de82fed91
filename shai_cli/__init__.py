"""
shai command line.

  config       ~/.shai/.env + config.yaml -> AgentConfig / ServerConfig
  headless     one turn over stdin/stdout, chainable through traces
  repl         interactive terminal loop
  shell_hook   suggestions for failed shell commands
  main         ``shai`` entry point (python-fire)
"""

__version__ = "0.1.0"
