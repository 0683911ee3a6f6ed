"""Database models — re-exports all models.

Import from here:  from leadsync.models import User, Contact, ...
Or from submodules: from leadsync.models.crm import Contact
"""

from .base import Base  # noqa: F401

# Auth & Users
from .auth import User  # noqa: F401

# CRM: Contacts, Organizations, Activities
from .crm import Activity, Contact, Organization  # noqa: F401

# Sync
from .sync import SyncHistory  # noqa: F401
