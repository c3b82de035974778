"""Range-based streaming download and on-the-fly AES-CTR decryption of audio files."""

__version__ = "0.3.1"
__all__ = ["range_set", "decrypt", "state", "receive", "streaming"]