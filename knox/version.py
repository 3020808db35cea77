"""Knox Meta information.
   Knox is a Nostr remote-signing bunker with encrypted key storage.
"""
__title__ = 'knox'
__description__ = (
   'Knox is a Nostr remote-signing bunker that keeps private keys '
   'encrypted at rest and issues revocable bunker URIs.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2024 Knox Developers'
__author__ = 'Knox Developers'
__license__ = 'Apache-2.0'
