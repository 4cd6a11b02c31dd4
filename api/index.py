# =============================================================================
# Overlay Backend - Vercel Serverless Entry Point
# =============================================================================

import os
import sys

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app

# Vercel's Python runtime serves the module-level WSGI `app`
app = create_app(os.environ.get('FLASK_ENV', 'production'))
