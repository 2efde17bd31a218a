import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parent.parent))

from chatsync.core.security import create_access_token

uid = sys.argv[1] if len(sys.argv) > 1 else "demo-user"
print(create_access_token(uid))
