# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Cryptographic primitives used for signature checks.

Nothing here implements signature math: RSA, DSA and ECDSA go through
cryptography, EdDSA through PyNaCl.
"""
import hashlib
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, encode_dss_signature

from keycanon.errors import CryptoError
from keycanon.keys import (KeyPacket, ALGO_RSA, ALGO_RSA_S, ALGO_DSA, ALGO_ECDSA, ALGO_EDDSA,
                           OID_NIST_P256, OID_NIST_P384, OID_NIST_P521, OID_ED25519)
from keycanon.signatures import Signature

logger: logging.Logger = logging.getLogger(__name__)

HASH_MD5 = 1
HASH_SHA1 = 2
HASH_RIPEMD160 = 3
HASH_SHA256 = 8
HASH_SHA384 = 9
HASH_SHA512 = 10
HASH_SHA224 = 11

HASHES = {
    HASH_SHA1: ('sha1', hashes.SHA1),
    HASH_SHA256: ('sha256', hashes.SHA256),
    HASH_SHA384: ('sha384', hashes.SHA384),
    HASH_SHA512: ('sha512', hashes.SHA512),
    HASH_SHA224: ('sha224', hashes.SHA224),
}

# curve -> (cryptography curve class, encoded point length)
CURVES = {
    OID_NIST_P256: (ec.SECP256R1, 65),
    OID_NIST_P384: (ec.SECP384R1, 97),
    OID_NIST_P521: (ec.SECP521R1, 133),
}


def hash_data(algorithm: int, data: bytes) -> bytes:
    """Hash data with an OpenPGP hash algorithm id.

    Raises:
        CryptoError: For rejected or unknown hash algorithms.
    """
    if algorithm not in HASHES:
        raise CryptoError('Unsupported hash algorithm %d' % algorithm)
    return hashlib.new(HASHES[algorithm][0], data).digest()


def _int_to_bytes(value: int, length: int) -> bytes:
    try:
        return value.to_bytes(length, 'big')
    except OverflowError:
        raise CryptoError('Integer does not fit in %d bytes' % length)


def _verify_rsa(sig: Signature, digest: bytes, signer: KeyPacket) -> bool:
    n, e = signer.material
    try:
        pubkey = rsa.RSAPublicNumbers(e, n).public_key()
    except ValueError as ex:
        raise CryptoError('Invalid RSA public key: %s' % ex)
    sigbytes = _int_to_bytes(sig.mpis[0], (n.bit_length() + 7) // 8)
    try:
        pubkey.verify(sigbytes, digest, padding.PKCS1v15(), Prehashed(HASHES[sig.hash_algo][1]()))
    except InvalidSignature:
        return False
    return True


def _verify_dsa(sig: Signature, digest: bytes, signer: KeyPacket) -> bool:
    p, q, g, y = signer.material
    try:
        pubkey = dsa.DSAPublicNumbers(y, dsa.DSAParameterNumbers(p, q, g)).public_key()
    except ValueError as ex:
        raise CryptoError('Invalid DSA public key: %s' % ex)
    r, s = sig.mpis
    try:
        pubkey.verify(encode_dss_signature(r, s), digest, Prehashed(HASHES[sig.hash_algo][1]()))
    except InvalidSignature:
        return False
    except ValueError as ex:
        raise CryptoError('DSA verification failed: %s' % ex)
    return True


def _verify_ecdsa(sig: Signature, digest: bytes, signer: KeyPacket) -> bool:
    if signer.curve not in CURVES:
        raise CryptoError('Unsupported ECDSA curve')
    curve, ptlen = CURVES[signer.curve]
    point = _int_to_bytes(signer.material[0], ptlen)
    try:
        pubkey = ec.EllipticCurvePublicKey.from_encoded_point(curve(), point)
    except ValueError:
        raise CryptoError('Invalid ECDSA public point')
    r, s = sig.mpis
    try:
        pubkey.verify(encode_dss_signature(r, s), digest, ec.ECDSA(Prehashed(HASHES[sig.hash_algo][1]())))
    except InvalidSignature:
        return False
    return True


def _verify_eddsa(sig: Signature, digest: bytes, signer: KeyPacket) -> bool:
    try:
        from nacl.signing import VerifyKey
        from nacl.exceptions import BadSignatureError
    except ModuleNotFoundError:
        raise RuntimeError('This operation requires PyNaCl libraries')

    if signer.curve != OID_ED25519:
        raise CryptoError('Unsupported EdDSA curve')
    point = _int_to_bytes(signer.material[0], 33)
    if point[0] != 0x40:
        raise CryptoError('Unsupported EdDSA point encoding')
    r, s = sig.mpis
    try:
        vk = VerifyKey(point[1:])
        vk.verify(digest, _int_to_bytes(r, 32) + _int_to_bytes(s, 32))
    except BadSignatureError:
        return False
    return True


VERIFIERS = {
    ALGO_RSA: _verify_rsa,
    ALGO_RSA_S: _verify_rsa,
    ALGO_DSA: _verify_dsa,
    ALGO_ECDSA: _verify_ecdsa,
    ALGO_EDDSA: _verify_eddsa,
}


def verify(signature: Signature, signed_data: bytes, signer: KeyPacket) -> bool:
    """Check a signature over already-assembled signed data.

    Args:
        signature: The parsed signature.
        signed_data: Everything covered by the signature, trailer included.
        signer: Public key of the claimed signer.

    Returns:
        True if the signature verifies, False if it does not.

    Raises:
        CryptoError: If the algorithm, hash or key parameters are unsupported.
    """
    if signature.pub_algo != signer.algorithm:
        logger.debug('Signature algorithm %d does not match key algorithm %d',
                     signature.pub_algo, signer.algorithm)
        return False
    if signer.algorithm not in VERIFIERS:
        raise CryptoError('Unsupported signature algorithm %d' % signer.algorithm)
    digest = hash_data(signature.hash_algo, signed_data)
    if digest[:2] != signature.left16:
        logger.debug('Quick check mismatch for %r', signature)
        return False
    return VERIFIERS[signer.algorithm](signature, digest, signer)
