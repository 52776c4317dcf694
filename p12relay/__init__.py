"""
p12relay
~~~~~~~~
Forward proxy that authenticates to mTLS-protected origins with a
passphrase-protected PKCS#12 identity and relays the responses over
plain HTTP.
"""

__version__ = "1.0.0"
