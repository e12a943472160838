"""
Staff Clearance Service
Domain models package.

The shared SQLAlchemy handle lives here so model modules can do
``from clearance.models import db``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
