"""Tenant <-> Evolution instance connection state.

Submodules are imported directly (``connection.store``, ``connection.wizard``
and so on); this package keeps no re-exports because ``evolution_api``
depends on ``connection.records``.
"""
