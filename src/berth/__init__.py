"""berth: session orchestration for containerised agent subprocesses."""
