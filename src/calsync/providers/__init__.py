"""Calendar provider adapters.

One adapter per provider variant (Google, Microsoft Graph, generic CalDAV,
iCloud, Nextcloud), all implementing
:class:`calsync.providers.base.CalendarAdapter`.  Use
:func:`calsync.providers.registry.build_adapter` to construct one for a
loaded connection.
"""
