"""
mist -- encrypted directory sync over SSH.

Your files stay plaintext at home and ciphertext everywhere else.
GnuPG does the encryption, rsync and unison move the bytes.
"""

__version__ = "0.3.0"
__author__ = "mist contributors"
