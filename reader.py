#!/usr/bin/env python3
"""
Standalone frame reader for the activity monitor.
Runs tail_frames from app.py in the foreground as a debug utility.
Note: the webapp starts its own in-process reader; this script is optional.
"""
import os
import sys
from app import tail_frames, FRAMES_PATH

if __name__ == '__main__':
    path = sys.argv[1] if len(sys.argv) > 1 else FRAMES_PATH
    print(f'[READER] Starting standalone reader on {path} (pid={os.getpid()}, ppid={os.getppid()})')
    try:
        tail_frames(path)
    except KeyboardInterrupt:
        print('[READER] Interrupted, exiting')
    except Exception as e:
        print(f'[READER] Exception: {e}', file=sys.stderr)
        raise
