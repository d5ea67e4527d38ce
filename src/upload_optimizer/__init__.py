"""
Upload Optimizer - optimizing reverse proxy for photo/video uploads

This package sits between upload clients and an Immich server. It enables:

- Intercepting multipart uploads and running the file through external commands
- Replacing the upload with the optimized file when it is smaller
- Bridging long optimizations back to the client through redirect long-polling
- Watching a directory tree and uploading whatever lands in it, optimized the same way

All transformation semantics belong to the configured commands; the proxy only
decides which command runs, in which workspace, and which file wins.

Key Components:
    - main: FastAPI application, upload interception and passthrough proxy
    - job_manager: Job registry and the redirect/wait delivery protocol
    - tasks: Ordered, fallback-capable task pipeline
    - gate: Concurrency cap on running commands
    - watcher: Directory watcher feeding the pipeline
    - configuration: Settings and task list loading

Usage:
    Run the proxy with:
        upload-optimizer --upstream http://immich-server:2283 --tasks-file config/default.yaml

    Every option can also be given as an IUO_* environment variable or in a .env file.
"""

__version__ = "0.1.0"
