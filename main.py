#!/usr/bin/env python

from scan_agent.cli import main


if __name__ == "__main__":
    main()
