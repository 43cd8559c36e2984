"""
Kaleido Testnet Miner - multi-wallet asyncio client
Reports simulated hashrate earnings for every wallet in the wallet file
"""

import asyncio
import json
import logging
import os
import random
import signal
import sys
import time

import portalocker
import requests

API_BASE = "https://kaleidofinance.xyz/api/testnet"
API_HEADERS = {
    'Content-Type': 'application/json',
    'Referer': 'https://kaleidofinance.xyz/testnet',
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36',
}
REQUEST_TIMEOUT = 30

HASHRATE = 75.5  # MH/s
EARNINGS_FACTOR = 0.0001
DUST_THRESHOLD = 0.00000001
CURRENCY = "KLDO"

UPDATE_INTERVAL = 30
OFFLINE_RETRY_DELAY = 60
REQUEST_RETRIES = 3
INIT_RETRY_DELAY = 10
INIT_RETRY_MAX_DELAY = 300
MAX_INIT_ATTEMPTS = 10

WALLET_PREFIX = "0x"

RESET = "\033[0m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
CYAN = "\033[36m"
WHITE = "\033[37m"

logger = logging.getLogger('kaleido_miner')


def color_text(text, color):
    return f"{color}{text}{RESET}"


class ColorFormatter(logging.Formatter):
    """Console formatter that colours the whole line by level"""

    LEVEL_COLORS = {
        logging.DEBUG: WHITE,
        logging.INFO: CYAN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: RED + BOLD,
    }

    def format(self, record):
        return color_text(super().format(record), self.LEVEL_COLORS.get(record.levelno, WHITE))


def setup_logging(log_file='miner.log'):
    """Setup file and console logging"""
    log_format = '%(asctime)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    logger.setLevel(logging.INFO)

    if logger.handlers:
        return logger

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(log_format, date_format))

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(ColorFormatter('%(message)s'))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


class MinerError(Exception):
    """Base class for miner failures"""


class RegistrationError(MinerError):
    """The wallet is not registered with the service"""


class RetryExhaustedError(MinerError):
    """A request kept failing after every allowed attempt"""


class MalformedResponseError(MinerError):
    """The service answered 200 with a body we cannot use"""


def now_ms():
    return int(time.time() * 1000)


def format_uptime(seconds):
    sec = int(seconds)
    months, sec = divmod(sec, 30 * 24 * 3600)
    weeks, sec = divmod(sec, 7 * 24 * 3600)
    days, sec = divmod(sec, 24 * 3600)
    hours, sec = divmod(sec, 3600)
    minutes, sec = divmod(sec, 60)

    parts = []
    if months > 0:
        parts.append(f"{months}MO")
    if weeks > 0:
        parts.append(f"{weeks}W")
    if days > 0:
        parts.append(f"{days}D")
    parts.append(f"{hours}H")
    parts.append(f"{minutes}M")
    parts.append(f"{sec}S")
    return ":".join(parts)


def mask_wallet(wallet):
    """Hide everything but the last four characters"""
    return "*" * max(len(wallet) - 4, 0) + wallet[-4:]


def load_wallets(wallets_file):
    """Read wallet addresses, one per line; anything not starting with 0x is ignored"""
    try:
        with open(wallets_file, 'r') as f:
            lines = f.read().split('\n')
    except OSError as e:
        logger.error(f"Error loading wallets from {wallets_file}: {e}")
        return []

    return [line.strip() for line in lines if line.strip().startswith(WALLET_PREFIX)]


class SessionStore:
    """Per-wallet session file guarded by a cross-process file lock"""

    def __init__(self, wallet, session_dir="."):
        self.path = os.path.join(session_dir, f"session_{wallet}.json")

    def load(self):
        """Return the stored session dict, or None when there is no usable file"""
        try:
            with open(self.path, 'r') as f:
                portalocker.lock(f, portalocker.LOCK_SH)
                try:
                    content = f.read()
                finally:
                    portalocker.unlock(f)
        except FileNotFoundError:
            return None
        except (OSError, portalocker.LockException) as e:
            logger.warning(f"Could not read session file {self.path}: {e}")
            return None

        try:
            data = json.loads(content)
        except ValueError as e:
            logger.warning(f"Ignoring corrupt session file {self.path}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Ignoring corrupt session file {self.path}: not an object")
            return None
        return data

    def save(self, data):
        # truncate only while holding the lock
        try:
            with open(self.path, 'a+') as f:
                portalocker.lock(f, portalocker.LOCK_EX)
                try:
                    f.seek(0)
                    f.truncate()
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    portalocker.unlock(f)
        except (OSError, portalocker.LockException) as e:
            logger.error(f"Failed to save session {self.path}: {e}")
            return False
        return True


class MinerWorker:
    """Simulated mining worker for one wallet"""

    def __init__(self, wallet, worker_id, session_dir=".", api_base=API_BASE,
                 max_init_attempts=MAX_INIT_ATTEMPTS, http=None, clock=None, sleep=None):
        self.wallet = wallet
        self.worker_id = worker_id
        self.api_base = api_base.rstrip('/')
        self.max_init_attempts = max_init_attempts
        self.store = SessionStore(wallet, session_dir)

        self.owns_http = http is None
        if http is None:
            http = requests.Session()
            http.headers.update(API_HEADERS)
        self.http = http
        self.clock = clock or now_ms
        self.sleep = sleep or asyncio.sleep

        self.current_earnings = {'total': 0.0, 'pending': 0.0, 'paid': 0.0}
        self.mining_state = {
            'is_active': False,
            'worker': "quantum-rig-1",
            'pool': "quantum-1",
            'start_time': None,
        }
        self.stats = {
            'hashrate': HASHRATE,
            'shares': {'accepted': 0, 'rejected': 0},
            'efficiency': 1.4,
            'power_usage': 120,
        }
        self.referral_bonus = 0.0
        self.session = None
        self.paused_duration = 0
        self.pause_start = None
        self.stopped = False
        self.failed = False

        self.prefix = f"[Wallet {worker_id}]"

    @property
    def is_active(self):
        return self.mining_state['is_active']

    @is_active.setter
    def is_active(self, value):
        self.mining_state['is_active'] = value

    @property
    def state(self):
        if self.stopped:
            return 'stopped'
        if self.failed:
            return 'failed'
        if not self.is_active:
            return 'uninitialized'
        if self.pause_start is not None:
            return 'paused'
        return 'active'

    # -- session persistence ------------------------------------------------

    def load_session(self):
        data = self.store.load()
        if data is not None:
            try:
                start_time = int(data['startTime'])
                earnings = data['earnings']
                current_earnings = {
                    'total': float(earnings['total']),
                    'pending': float(earnings['pending']),
                    'paid': float(earnings['paid']),
                }
                referral_bonus = float(data['referralBonus'])
                paused_duration = int(data.get('pausedDuration') or 0)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"{self.prefix} Session file is incomplete ({e}), starting fresh")
            else:
                self.mining_state['start_time'] = start_time
                self.current_earnings = current_earnings
                self.referral_bonus = referral_bonus
                self.paused_duration = paused_duration
                session = data.get('session')
                self.session = random.randrange(1000000) if session is None else session
                logger.info(f"{self.prefix} Previous session loaded successfully")
                return True

        self.session = random.randrange(1000000)
        return False

    def session_data(self):
        return {
            'startTime': self.mining_state['start_time'],
            'earnings': dict(self.current_earnings),
            'referralBonus': self.referral_bonus,
            'session': self.session,
            'pausedDuration': self.paused_duration,
        }

    def save_session(self):
        return self.store.save(self.session_data())

    # -- HTTP -----------------------------------------------------------------

    async def _get(self, path, **kwargs):
        response = await asyncio.to_thread(
            self.http.get, f"{self.api_base}{path}", timeout=REQUEST_TIMEOUT, **kwargs)
        response.raise_for_status()
        return _json_object(response)

    async def _post(self, path, payload):
        response = await asyncio.to_thread(
            self.http.post, f"{self.api_base}{path}", json=payload, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        return _json_object(response)

    async def retry_request(self, operation, name, retries=REQUEST_RETRIES):
        """Run operation, retrying transient failures with exponential backoff.

        400 and 401 responses are re-raised immediately. A Retry-After header
        on a failed response replaces the computed delay.
        """
        for attempt in range(retries):
            try:
                return await operation()
            except requests.RequestException as e:
                response = e.response
                status = response.status_code if response is not None else None
                if status in (400, 401):
                    logger.error(f"[{name}] Request failed with status {status}: {_error_message(e)}")
                    raise

                if attempt + 1 >= retries:
                    logger.warning(f"[{name}] Error (status: {status or 'unknown'}) on final attempt {attempt + 1}/{retries}")
                    break

                delay = _retry_after(response)
                if delay is None:
                    delay = 2 ** attempt
                logger.warning(f"[{name}] Error (status: {status or 'unknown'}). Retrying ({attempt + 1}/{retries}) in {delay} seconds...")
                await self.sleep(delay)

        logger.error(f"[{name}] All retries failed.")
        raise RetryExhaustedError(f"{name} failed after {retries} attempts.")

    # -- lifecycle --------------------------------------------------------------

    async def initialize(self):
        """Bring the worker up and mine, restarting with backoff on failure"""
        attempt = 0
        delay = INIT_RETRY_DELAY
        while not self.stopped:
            attempt += 1
            try:
                await self._start()
                return
            except (requests.RequestException, MinerError) as e:
                logger.error(f"{self.prefix} Initialization failed: {e}")

            if self.max_init_attempts and attempt >= self.max_init_attempts:
                logger.error(f"{self.prefix} Giving up after {attempt} initialization attempts")
                self.failed = True
                return

            logger.warning(f"{self.prefix} Retrying initialization in {delay} seconds...")
            await self.sleep(delay)
            delay = min(delay * 2, INIT_RETRY_MAX_DELAY)

    async def _start(self):
        registration = await self.retry_request(
            lambda: self._get("/check-registration", params={'wallet': self.wallet}),
            "Registration check",
        )
        if not registration.get('isRegistered'):
            raise RegistrationError("Wallet not registered")

        user_data = registration.get('userData') or {}
        if not isinstance(user_data, dict):
            raise MalformedResponseError(f"Registration check returned unusable userData {user_data!r}")
        referral_bonus = user_data.get('referralBonus') or 0
        if not _is_number(referral_bonus):
            raise MalformedResponseError(f"Registration check returned unusable referralBonus {referral_bonus!r}")

        has_session = self.load_session()
        if not has_session:
            self.referral_bonus = float(referral_bonus)
            self.current_earnings = {'total': self.referral_bonus, 'pending': 0.0, 'paid': 0.0}
            self.mining_state['start_time'] = self.clock()

        if self.stopped:
            return
        self.is_active = True
        logger.info(f"{self.prefix} Mining {'resumed' if has_session else 'initialized'} successfully")
        await self.run_loop()

    def effective_elapsed(self):
        """Seconds of mining time, excluding downtime"""
        start_time = self.mining_state['start_time']
        if start_time is None:
            return 0.0
        return max(self.clock() - start_time - self.paused_duration, 0) / 1000

    def calculate_earnings(self):
        return self.stats['hashrate'] * self.effective_elapsed() * EARNINGS_FACTOR * (1 + self.referral_bonus)

    async def update_balance(self, final_update=False):
        try:
            if self.pause_start is not None:
                downtime = self.clock() - self.pause_start
                self.paused_duration += downtime
                self.pause_start = None
                logger.warning(f"{self.prefix} Resumed after downtime of {downtime / 1000:.2f} seconds.")

            new_earnings = self.calculate_earnings()
            if not final_update and new_earnings < DUST_THRESHOLD:
                return

            pending = 0.0 if final_update else new_earnings
            paid = self.current_earnings['paid'] + new_earnings if final_update else self.current_earnings['paid']
            payload = {
                'wallet': self.wallet,
                'earnings': {
                    'total': self.current_earnings['total'] + new_earnings,
                    'pending': pending,
                    'paid': paid,
                    'session': self.session,
                },
            }

            result = await self.retry_request(
                lambda: self._post("/update-balance", payload),
                "Balance update",
            )
            if not result.get('success'):
                logger.warning(f"{self.prefix} Balance update was not accepted by the server")
                return

            balance = result.get('balance')
            if not _is_number(balance):
                raise MalformedResponseError(f"Balance update returned unusable balance {balance!r}")
        except (requests.RequestException, MinerError) as e:
            if self.pause_start is None:
                self.pause_start = self.clock()
                logger.warning(f"{self.prefix} Entering maintenance mode, pausing earnings calculation.")
            logger.error(f"{self.prefix} Update failed: {e}")
            raise

        self.current_earnings = {
            'total': float(balance),
            'pending': pending,
            'paid': paid,
        }
        self.save_session()
        self.log_status(final_update)

    async def run_loop(self):
        while self.is_active:
            try:
                await self.update_balance()
            except (requests.RequestException, MinerError):
                logger.error(f"{self.prefix} API error detected, switching to offline mode.")
                logger.warning(f"{self.prefix} Retrying in {OFFLINE_RETRY_DELAY} seconds...")
                await self.sleep(OFFLINE_RETRY_DELAY)
            await self.sleep(UPDATE_INTERVAL)

    async def stop(self):
        """Settle pending earnings once and return the paid total"""
        if self.stopped:
            return self.current_earnings['paid']

        self.is_active = False
        self.stopped = True

        try:
            if self.mining_state['start_time'] is not None:
                try:
                    await self.update_balance(final_update=True)
                except (requests.RequestException, MinerError) as e:
                    logger.error(f"{self.prefix} Final settlement failed: {e}")
                self.save_session()
        finally:
            if self.owns_http:
                self.http.close()
        return self.current_earnings['paid']

    # -- reporting --------------------------------------------------------------

    def log_status(self, final=False):
        status_type = "Final Status" if final else "Mining Status"
        uptime = format_uptime(self.effective_elapsed())
        active = color_text('true', GREEN) if self.is_active else color_text('false', RED)
        earnings = self.current_earnings
        hashrate = f"{self.stats['hashrate']} MH/s"
        total = f"{earnings['total']:.8f} {CURRENCY}"
        pending = f"{earnings['pending']:.8f} {CURRENCY}"
        paid = f"{earnings['paid']:.8f} {CURRENCY}"
        bonus = f"+{self.referral_bonus * 100:.2f}%"

        logger.info(f"{self.prefix} {status_type}: total={earnings['total']:.8f} "
                    f"pending={earnings['pending']:.8f} paid={earnings['paid']:.8f} uptime={uptime}")

        print(color_text("=" * 50, YELLOW))
        print(color_text(f"Loaded Wallet [{BOLD}{self.worker_id}{RESET}{GREEN}]", GREEN))
        print(color_text(f"Status        [{BOLD}{status_type}{RESET}{GREEN}]", GREEN))
        print(color_text(f"For wallet    [{mask_wallet(self.wallet)}]", GREEN))
        print(color_text("=" * 50, YELLOW))
        print(f"Uptime        : {color_text(uptime, CYAN)}")
        print(f"Active        : {active}")
        print(f"Hashrate      : {color_text(hashrate, CYAN)}")
        print(f"Total Earned  : {color_text(total, CYAN)}")
        print(f"Pending       : {color_text(pending, CYAN)}")
        print(f"Paid          : {color_text(paid, CYAN)}")
        print(f"Referral Bonus: {color_text(bonus, CYAN)}")
        print(color_text("=" * 50, YELLOW))


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _json_object(response):
    data = response.json()
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Expected a JSON object from {response.url}, got {type(data).__name__}")
    return data


def _retry_after(response):
    if response is None:
        return None
    value = response.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return max(int(value), 0)
    except ValueError:
        return None


def _error_message(error):
    response = error.response
    if response is not None:
        try:
            message = response.json().get('message')
        except (ValueError, AttributeError):
            message = None
        if message:
            return message
    return str(error)


class MiningCoordinator:
    """Runs one MinerWorker per wallet and shuts them all down together"""

    def __init__(self, wallets_file="wallets.txt", session_dir=".", api_base=API_BASE,
                 max_init_attempts=MAX_INIT_ATTEMPTS, worker_factory=MinerWorker):
        self.wallets_file = wallets_file
        self.session_dir = session_dir
        self.api_base = api_base
        self.max_init_attempts = max_init_attempts
        self.worker_factory = worker_factory

        self.workers = []
        self.tasks = []
        self.total_paid = 0.0
        self.is_running = False
        self._stop_event = None
        self._shutdown_done = False

    async def start(self):
        if self.is_running:
            logger.warning("Mining coordinator is already running")
            return

        self.is_running = True
        self._stop_event = asyncio.Event()

        wallets = load_wallets(self.wallets_file)
        if not wallets:
            logger.error(f"No valid wallets found in {self.wallets_file}")
            return

        logger.info(f"Loaded {len(wallets)} wallets")
        for index, wallet in enumerate(wallets):
            worker = self.worker_factory(
                wallet, index + 1,
                session_dir=self.session_dir,
                api_base=self.api_base,
                max_init_attempts=self.max_init_attempts,
            )
            self.workers.append(worker)
            self.tasks.append(asyncio.create_task(worker.initialize(), name=f"wallet-{index + 1}"))

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self):
        """Cancel every worker task, settle all workers concurrently, return total paid"""
        if self._shutdown_done:
            return self.total_paid
        self._shutdown_done = True

        for task in self.tasks:
            task.cancel()
        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for worker, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error(f"[Wallet {worker.worker_id}] Worker ended with error: {result}")

        settled = await asyncio.gather(*(worker.stop() for worker in self.workers), return_exceptions=True)
        total = 0.0
        for worker, result in zip(self.workers, settled):
            if isinstance(result, BaseException):
                logger.error(f"[Wallet {worker.worker_id}] Stop failed: {result!r}")
                continue
            total += result
        self.total_paid = total
        return self.total_paid

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)

    async def run(self):
        await self.start()
        if not self.workers:
            return 0.0

        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            self._remove_signal_handlers()

        print("\nStopping all miners...")
        logger.info("Received shutdown signal, stopping all workers...")
        total = await self.shutdown()
        self.print_report()
        return total

    def print_report(self):
        print()
        print(color_text("=" * 40, YELLOW))
        print(color_text(f"{'Payment & Wallets Detail':^40}", GREEN + BOLD))
        print(color_text("=" * 40, YELLOW))
        print(f"{color_text('Total Wallets  :', CYAN)} {len(self.workers)}")
        print(f"{color_text('Total Paid     :', CYAN)} {color_text(f'{self.total_paid:.8f}', GREEN)} {CURRENCY}")
        print(color_text("=" * 40, YELLOW))

        logger.info(f"Session statistics: {len(self.workers)} wallets, {self.total_paid:.8f} {CURRENCY} paid")


def main(argv=None):
    """Main entry point"""
    argv = sys.argv if argv is None else argv

    wallets_file = "wallets.txt"
    session_dir = "."
    log_file = "miner.log"
    api_base = API_BASE
    max_init_attempts = MAX_INIT_ATTEMPTS

    for i, arg in enumerate(argv):
        if arg == '--wallets-file' and i + 1 < len(argv):
            wallets_file = argv[i + 1]
        elif arg == '--session-dir' and i + 1 < len(argv):
            session_dir = argv[i + 1]
        elif arg == '--log-file' and i + 1 < len(argv):
            log_file = argv[i + 1]
        elif arg == '--api-base' and i + 1 < len(argv):
            api_base = argv[i + 1]
        elif arg == '--max-init-attempts' and i + 1 < len(argv):
            try:
                max_init_attempts = int(argv[i + 1])
            except ValueError:
                print("Error: --max-init-attempts must be an integer")
                return 1

    if max_init_attempts < 0:
        print("Error: --max-init-attempts must be 0 (unbounded) or more")
        return 1

    setup_logging(log_file)

    print("=" * 70)
    print("KALEIDO TESTNET MINER")
    print("=" * 70)
    print()
    print("Configuration:")
    print(f"  Wallets file: {wallets_file}")
    print(f"  Session dir: {session_dir}")
    print(f"  API: {api_base}")
    print(f"  Init attempts: {max_init_attempts or 'unbounded'}")
    print()

    logger.info(f"Configuration: wallets_file={wallets_file}, session_dir={session_dir}, api_base={api_base}")

    coordinator = MiningCoordinator(
        wallets_file=wallets_file,
        session_dir=session_dir,
        api_base=api_base,
        max_init_attempts=max_init_attempts or None,
    )
    asyncio.run(coordinator.run())

    logger.info("Kaleido Miner shutdown complete")
    return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
