"""Agent runner: the process that runs inside each agent container."""
