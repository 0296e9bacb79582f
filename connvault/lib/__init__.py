"""Library layer: cipher, storage backends and the profile store."""
