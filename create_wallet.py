#!/usr/bin/env python3
"""
Create a new Solana wallet for the bot.
⚠️ IMPORTANT: Save the private key securely!
"""
import argparse
import json

import base58
from solders.keypair import Keypair

parser = argparse.ArgumentParser(description='Create a new wallet')
parser.add_argument('-o', '--output', help='Also write the secret key as a JSON array (for --keypair)')
args = parser.parse_args()

keypair = Keypair()

# base58 private key (WALLET_PRIVATE_KEY in .env)
private_key_base58 = base58.b58encode(bytes(keypair)).decode('utf-8')
public_key = str(keypair.pubkey())

if args.output:
    with open(args.output, 'w') as f:
        json.dump(list(bytes(keypair)), f)

print("=" * 60)
print("NEW WALLET CREATED")
print("=" * 60)
print(f"\nPublic Address (Public Key):")
print(public_key)
print(f"\nPrivate Key (base58):")
print(private_key_base58)
if args.output:
    print(f"\nKeypair file: {args.output}")
print("\n" + "=" * 60)
print("⚠️  IMPORTANT:")
print("1. Save the private key in a secure place!")
print("2. Add it to .env as WALLET_PRIVATE_KEY, or pass the keypair file with --keypair")
print("3. Fund the wallet with SOL (and the loan token) for testing")
print("4. NEVER publish the private key!")
print("=" * 60)
