"""Global configuration for colloquy.

The chat client also has its own configuration, which see:

  - client.config
"""

import pathlib

# Used for various things. E.g. the conversation store and the API keys go here.
userdata_dir = "~/.config/colloquy/"

# Convert to an absolute path, just once here.
userdata_dir = pathlib.Path(userdata_dir).expanduser().resolve()
