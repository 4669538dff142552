# server.py
import argparse
import logging
import signal
import socket
import struct
import sys
import threading
from datetime import datetime
from enum import Enum

from chat_config import load_config, setup_logging
from credentials import CredentialStore
from file_transfer import FileTransferService

logger = logging.getLogger(__name__)

AUTH_PREFIX = "/auth "
COMMAND_PREFIX = "/"

DEFAULT_SEND_TIMEOUT = 10.0

COMMANDS_HELP = [
    "/file <filepath> - Send a file",
    "/users - List connected users",
    "/quit - Exit the chat",
]


# --- Server-Side Client Representation ---
def set_send_timeout(sock, seconds):
    """Bound how long a single write may block. Reads stay fully blocking."""
    if sys.platform == 'win32':
        value = struct.pack('<L', int(seconds * 1000))
    else:
        whole = int(seconds)
        value = struct.pack('ll', whole, int((seconds - whole) * 1_000_000))
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDTIMEO, value)


class Client:
    def __init__(self, sock, address, send_timeout=DEFAULT_SEND_TIMEOUT):
        self.socket = sock
        self.address = address
        self.username = None
        self.alive = True
        if send_timeout:
            # A peer that stops reading turns into a failed send instead of a stuck one.
            set_send_timeout(sock, send_timeout)
        self.reader = sock.makefile('r', encoding='utf-8', newline='\n')
        self._send_lock = threading.Lock()

    def __repr__(self):
        return f"<Client {self.username or self.address}>"

    def read_line(self):
        """Next line without its terminator, or None once the stream is finished."""
        line = self.reader.readline()
        if not line:
            return None
        return line.rstrip('\r\n')

    def send_message(self, message):
        """Send string message to this client. Returns False on failure."""
        if not self.alive:
            return False
        if not message.endswith('\n'):
            message += '\n'
        try:
            with self._send_lock:
                self.socket.sendall(message.encode('utf-8'))
            return True
        except OSError as e:
            logger.warning(f"Error sending message to {self.username or self.address}: {e}")
            return False

    def close(self):
        """Close client connection. Safe to call from any thread, more than once."""
        self.alive = False
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.socket.close()
        except OSError:
            pass
# --- End Server-Side Client Representation ---


# --- Client Manager ---
class ClientManager:
    """
    Registry of authenticated, connected clients.

    One lock covers membership changes and every full iteration, so a
    broadcast or user listing always sees a whole, consistent set.
    """

    def __init__(self):
        self.clients = set()
        self.lock = threading.Lock()

    def add_client(self, client, greeting=None):
        """
        Admit a client. Fails if its username already has an active session.

        `greeting` is written before the lock is released, so it reaches the
        client ahead of any broadcast.
        """
        with self.lock:
            if any(c.username == client.username for c in self.clients):
                return False
            self.clients.add(client)
            if greeting is not None:
                client.send_message(greeting)
        return True

    def remove_client(self, client):
        """Returns True if the client was registered. Removing twice is a no-op."""
        with self.lock:
            if client not in self.clients:
                return False
            self.clients.remove(client)
            return True

    def list_usernames(self):
        with self.lock:
            return sorted(c.username for c in self.clients)

    def broadcast(self, message):
        """
        Deliver to every registered client. Returns the number of deliveries.

        A recipient whose send fails is dropped from the registry and its
        connection shut down; the rest still get the message.
        """
        failed = []
        delivered = 0
        with self.lock:
            for client in list(self.clients):
                if client.send_message(message):
                    delivered += 1
                else:
                    failed.append(client)
            for client in failed:
                self.clients.discard(client)

        for client in failed:
            logger.warning(f"Broadcast failed for {client.username}, disconnecting.")
            client.close()
        return delivered

    def disconnect_all(self, message=None):
        """Notify and close every client; used on server shutdown."""
        with self.lock:
            remaining = list(self.clients)
            self.clients.clear()
        for client in remaining:
            if message:
                client.send_message(message)
            client.close()
        return len(remaining)
# --- End Client Manager ---


class SessionState(Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


# --- Client Handler Thread ---
class ClientHandler:
    def __init__(self, client_sock, addr, client_manager, credentials,
                 file_transfers=None, chat_timestamps=False, send_timeout=DEFAULT_SEND_TIMEOUT):
        self.client = Client(client_sock, addr, send_timeout=send_timeout)
        self.client_manager = client_manager
        self.credentials = credentials
        self.file_transfers = file_transfers or FileTransferService()
        self.chat_timestamps = chat_timestamps
        self.state = SessionState.CONNECTING
        self._state_lock = threading.Lock()

    @property
    def username(self):
        return self.client.username

    # --- Authentication ---
    def prompt(self, text):
        """Send an /auth prompt and wait for the raw reply (None if the client went away)."""
        if not self.client.send_message(AUTH_PREFIX + text):
            return None
        return self.client.read_line()

    def reject(self, text):
        self.client.send_message(AUTH_PREFIX + text)
        logger.info(f"Authentication failed for {self.client.address}: {text}")
        return None

    def authenticate(self):
        """
        Run login or registration once.

        Returns the username once the session is in the registry, or None.
        Nothing is retried here; a failed attempt ends the connection.
        """
        choice = self.prompt("Choose action (1: Login, 2: Register):")
        if choice is None:
            return None
        if choice.strip() == "2":
            return self.register()
        return self.login()

    def enter(self, username, success_text):
        """Put the session in the registry and confirm it to the client."""
        self.client.username = username
        if self.client_manager.add_client(self.client, greeting=AUTH_PREFIX + success_text):
            return True
        self.client.username = None
        return False

    def register(self):
        username = self.prompt("Enter new username:")
        if username is None:
            return None
        if not username.strip():
            return self.reject("Username cannot be empty!")
        if self.credentials.exists(username):
            return self.reject("Username already exists!")

        password = self.prompt("Enter password:")
        if password is None:
            return None
        # Admission happens while the store is still locked, so no login for
        # the new name can slip in between storing and entering the registry.
        entered = []
        stored = self.credentials.register(
            username, password,
            on_stored=lambda: entered.append(
                self.enter(username, "Registration successful! Press Enter to Continue.")),
        )
        if not stored:
            return self.reject("Username already exists!")
        if not entered[0]:
            return self.reject("User is already logged in!")
        return username

    def login(self):
        username = self.prompt("Enter username:")
        if username is None:
            return None
        if not username.strip():
            return self.reject("Username cannot be empty!")
        password = self.prompt("Enter password:")
        if password is None:
            return None
        if not self.credentials.verify(username, password):
            return self.reject("Invalid credentials!")
        if not self.enter(username, "Login successful!"):
            return self.reject("User is already logged in!")
        return username

    def admit(self):
        """Authenticate and register. True only if the session is now in the registry."""
        self.state = SessionState.AUTHENTICATING
        if self.authenticate() is None:
            return False
        self.state = SessionState.ACTIVE
        return True
    # --- End Authentication ---

    # --- Commands ---
    def send_help(self, header):
        self.client.send_message("\n".join([header] + COMMANDS_HELP))

    def send_user_list(self):
        lines = ["Connected users:"] + [f"- {name}" for name in self.client_manager.list_usernames()]
        self.client.send_message("\n".join(lines))

    def handle_file_transfer(self, path):
        if not path:
            self.client.send_message("Usage: /file <filepath>")
            return

        success, result = self.file_transfers.transfer(path)
        if not success:
            logger.info(f"File transfer error from {self.username}: {result}")
            self.client.send_message(f"Error sending file: {result}")
            return

        message = f"{self.username} shared file: {result}"
        logger.info(message)
        self.client_manager.broadcast(message)

    def handle_command(self, line):
        """Dispatch a /command. Returns False when the session should end."""
        parts = line.split(None, 1)
        command = parts[0].lower()
        argument = parts[1].strip() if len(parts) > 1 else ""

        if command == '/users':
            self.send_user_list()
        elif command == '/quit':
            return False
        elif command == '/file':
            self.handle_file_transfer(argument)
        else:
            self.send_help("Unknown command. Available commands:")
        return True
    # --- End Commands ---

    def format_chat(self, text):
        line = f"{self.username}: {text}"
        if self.chat_timestamps:
            line = f"[{datetime.now().strftime('%H:%M:%S')}] {line}"
        return line

    def handle_message(self, line):
        """Route one incoming line. Returns False when the session should end."""
        if line.startswith(COMMAND_PREFIX):
            return self.handle_command(line)
        if not line.strip():
            return True

        message = self.format_chat(line)
        logger.info(message)
        self.client_manager.broadcast(message)
        return True

    def disconnect(self):
        """Leave the registry, tell everyone, close the stream. Runs once."""
        with self._state_lock:
            if self.state is SessionState.CLOSED:
                return
            was_active = self.state is SessionState.ACTIVE
            self.state = SessionState.CLOSED

        if was_active:
            self.client_manager.remove_client(self.client)
            logger.info(f"{self.username} has left the chat")
            self.client_manager.broadcast(f"{self.username} has left the chat!")

        self.client.close()
        try:
            self.client.reader.close()
        except OSError:
            pass

    def run(self):
        """Main handler loop: authenticate, then read lines until EOF, error or /quit."""
        try:
            admitted = self.admit()
        except (OSError, UnicodeDecodeError) as e:
            logger.info(f"Error during authentication for {self.client.address}: {e}")
            admitted = False
        except Exception:
            logger.exception(f"Unexpected error during authentication for {self.client.address}")
            admitted = False

        if not admitted:
            logger.info(f"Failed authentication or immediate disconnect for {self.client.address}.")
            self.disconnect()
            return

        username = self.username
        logger.info(f"{username} has joined the chat")
        self.client_manager.broadcast(f"{username} has joined the chat!")
        self.send_help(f"Welcome {username}! Commands available:")

        try:
            while self.state is SessionState.ACTIVE:
                line = self.client.read_line()
                if line is None:
                    break
                if not self.handle_message(line):
                    break
        except (OSError, UnicodeDecodeError) as e:
            logger.info(f"{username} disconnected due to error: {e}")
        except Exception:
            logger.exception(f"Exception in client thread ({username})")
        finally:
            self.disconnect()
# --- End Client Handler Thread ---


# --- Main Server Logic ---
def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Multi-client TCP chat server")
    parser.add_argument('--config', help="Path to a JSON config file")
    parser.add_argument('--host', help="Address to bind to")
    parser.add_argument('-p', '--port', type=int, help="Port number to listen on")
    parser.add_argument('--log-level', help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config)
    for key in ('host', 'port', 'log_level'):
        value = getattr(args, key)
        if value is not None:
            config[key] = value

    setup_logging(config['log_level'])

    host, port = config['host'], config['port']
    if not (0 < port < 65536):
        print(f"Invalid port: {port}. Port out of range")
        sys.exit(1)

    server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        server_socket.bind((host, port))
    except OSError as e:
        print(f"Error binding to {host}:{port} - {e}")
        sys.exit(1)

    server_socket.listen(5)
    client_manager = ClientManager()
    credentials = CredentialStore(
        hash_passwords=config['hash_passwords'],
        iterations=config['pbkdf2_iterations'],
    )
    file_transfers = FileTransferService(config['uploads_dir'])
    logger.info(f"Chat Server is running on port {port}")
    logger.info("Waiting for clients...")

    shutdown_event = threading.Event()

    def signal_handler(sig, frame):
        logger.info("Signal received. Server is shutting down...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server_socket.settimeout(1.0)

    while not shutdown_event.is_set():
        try:
            client_sock, addr = server_socket.accept()
        except socket.timeout:
            continue
        except OSError as e:
            if not shutdown_event.is_set():
                logger.error(f"Error accepting connection: {e}")
            break

        logger.info(f"New connection from: {addr[0]}")
        client_sock.settimeout(None)
        handler = ClientHandler(
            client_sock, addr, client_manager, credentials,
            file_transfers=file_transfers,
            chat_timestamps=config['chat_timestamps'],
            send_timeout=config['send_timeout'],
        )
        t = threading.Thread(target=handler.run, name=f"client-{addr[0]}:{addr[1]}", daemon=True)
        t.start()

    # --- Shutdown Sequence ---
    logger.info("Server accept loop finished. Cleaning up...")
    server_socket.close()
    count = client_manager.disconnect_all("Server is shutting down...")
    logger.info(f"Disconnected {count} client(s). Server shutdown complete.")


if __name__ == "__main__":
    main()
