# Overview: Flask extension instances for database, migrations and background work.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .background import BackgroundDispatcher

db = SQLAlchemy()
migrate = Migrate()
dispatcher = BackgroundDispatcher()
