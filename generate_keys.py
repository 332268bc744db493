import sys

from parley import crypto
from parley.keystore import identity_path, load_or_create_identity

# Quick one-off identity keygen for a demo user (default "bob").
# - X25519, the same curve parley uses to wrap conversation keys.
# - Private key is written unencrypted under ~/.parley/<user>_identity.pem
#   (fine for local testing; lock it down for real use).
# - Running it again just loads the existing key.

user = sys.argv[1] if len(sys.argv) > 1 else "bob"

# 1) Load or generate the identity key (creates ~/.parley if needed).
path = identity_path(user)
privkey = load_or_create_identity(path)

# 2) Print the public key in Base64 so you can paste it into requests
#    (PUT /users/me/public-key).
print(f"{user}'s identity key: {path}")
print(f"{user}'s public key (base64):")
print(crypto.export_public_key(privkey.public_key()))
