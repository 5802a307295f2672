"""
PythonAnywhere WSGI entrypoint for JestBlank.

Usage on PythonAnywhere:
1. Copy this file's contents into your WSGI configuration file
   (usually /var/www/<username>_pythonanywhere_com_wsgi.py), or import it.
2. Set JESTBLANK_PROJECT_ROOT (or edit DEFAULT_PROJECT_ROOT below).
3. Put APPWRITE_* settings and APP_STANDALONE=false in the project's .env.
4. Reload the web app from the PythonAnywhere dashboard.
"""

from __future__ import annotations

import os
import sys

from dotenv import load_dotenv

DEFAULT_PROJECT_ROOT = "/home/you/jestblank"

PROJECT_ROOT = os.getenv("JESTBLANK_PROJECT_ROOT", DEFAULT_PROJECT_ROOT)
if not os.path.isdir(PROJECT_ROOT):
    PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

from app import create_app  # noqa: E402

application = create_app(log_file=os.path.join(PROJECT_ROOT, "app.log"))
