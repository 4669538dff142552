# client.py
import argparse
import socket
import sys
import threading

AUTH_PREFIX = "/auth "

# Prompt fragments that end the authentication exchange.
AUTH_SUCCESS_MARKERS = ("successful",)
AUTH_FAILURE_MARKERS = (
    "Invalid credentials",
    "already exists",
    "already logged in",
    "cannot be empty",
)


def parse_auth_prompt(line):
    """Return the prompt text of an /auth line, or None for any other line."""
    if line.startswith(AUTH_PREFIX):
        return line[len(AUTH_PREFIX):]
    if line == AUTH_PREFIX.strip():
        return ""
    return None


def auth_outcome(prompt):
    """True on success, False on failure, None while more replies are expected."""
    if any(marker in prompt for marker in AUTH_FAILURE_MARKERS):
        return False
    if any(marker in prompt for marker in AUTH_SUCCESS_MARKERS):
        return True
    return None


class Client:
    def __init__(self, server_host, port, input_func=input, output_func=print):
        self.server_host = server_host
        self.port = port
        self.sock = None
        self.rfile = None
        self.socket_lock = threading.Lock()
        self.receive_thread = None
        self.is_running = True
        self.input = input_func
        self.output = output_func

    def connect(self):
        try:
            self.sock = socket.create_connection((self.server_host, self.port))
        except OSError as e:
            self.output(f"Client Error: {e}")
            return False
        self.rfile = self.sock.makefile('r', encoding='utf-8', newline='\n')
        return True

    def send_line(self, line):
        """Helper to send a line with lock, ensuring encoding and newline."""
        if not self.is_running:
            return False
        try:
            with self.socket_lock:
                self.sock.sendall((line + '\n').encode('utf-8'))
            return True
        except OSError as e:
            self.output(f"Connection error during send: {e}. Shutting down.")
            self.is_running = False
            return False

    def authenticate(self):
        """Answer /auth prompts until the server reports success or failure."""
        for raw in self.rfile:
            line = raw.rstrip('\r\n')
            prompt = parse_auth_prompt(line)
            if prompt is None:
                self.output(line)
                continue

            self.output(prompt)
            outcome = auth_outcome(prompt)
            if outcome is False:
                return False
            if outcome is True:
                return True
            if not self.send_line(self.input()):
                return False
        return False

    def receive_messages(self):
        """Background thread, prints anything the server sends."""
        try:
            for raw in self.rfile:
                self.output(raw.rstrip('\r\n'))
        except (OSError, ValueError) as e:
            if self.is_running:
                self.output(f"Receiver error: {e}")
        if self.is_running:
            self.output("Connection to server lost.")
        self.is_running = False

    def handle_input(self, user_input):
        """Send one line typed by the user. Returns False once the client should stop."""
        if not self.send_line(user_input):
            return False
        if user_input.strip().lower() == '/quit':
            self.is_running = False
            return False
        return True

    def run(self):
        if not self.connect():
            return 1
        try:
            if not self.authenticate():
                self.output("Authentication failed. Exiting...")
                return 1

            self.receive_thread = threading.Thread(target=self.receive_messages, daemon=True)
            self.receive_thread.start()

            while self.is_running:
                try:
                    user_input = self.input()
                except EOFError:
                    self.handle_input('/quit')
                    break
                if not self.handle_input(user_input):
                    break
        except KeyboardInterrupt:
            self.send_line('/quit')
        finally:
            self.shutdown_client()
        return 0

    def shutdown_client(self):
        self.is_running = False
        if self.sock is None:
            return
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Terminal chat client")
    parser.add_argument('host', nargs='?', default='localhost')
    parser.add_argument('port', nargs='?', type=int, default=12345)
    args = parser.parse_args(argv)
    sys.exit(Client(args.host, args.port).run())


if __name__ == "__main__":
    main()
