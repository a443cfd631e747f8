#!/usr/bin/env python3
import os
import sys

# Make tee_jobs importable when run from the repository root
sys.path.append(os.getcwd())

from alembic.config import main

if __name__ == '__main__':
    sys.exit(main())
