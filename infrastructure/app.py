#!/usr/bin/env python3
"""
URL Shortener Provisioner
=========================
Stands up the URL shortener (table, handler, REST API, auth, custom domain)
from a flat list of resource descriptors, in dependency order.

Stack declaration order:
  DatabaseStack -> AuthStack -> ApiStack -> DomainStack

Run: python infrastructure/app.py deploy --context domainName=example.org
"""
import sys

from urlshortener.cli import main

if __name__ == "__main__":
    sys.exit(main())
