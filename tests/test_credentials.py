import threading

from credentials import CredentialStore, hash_secret, verify_secret


def run_concurrently(target, args_list):
    barrier = threading.Barrier(len(args_list))
    results = [None] * len(args_list)

    def worker(i, args):
        barrier.wait()
        results[i] = target(*args)

    threads = [threading.Thread(target=worker, args=(i, a)) for i, a in enumerate(args_list)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


def test_register_then_verify():
    store = CredentialStore()
    assert store.register('alice', 'pw1')
    assert store.verify('alice', 'pw1')
    assert store.exists('alice')
    assert store.usernames() == ['alice']


def test_duplicate_registration_is_refused_and_keeps_first_secret():
    store = CredentialStore()
    assert store.register('alice', 'pw1')
    assert not store.register('alice', 'pw2')
    assert store.verify('alice', 'pw1')
    assert not store.verify('alice', 'pw2')


def test_verify_is_exact_and_case_sensitive():
    store = CredentialStore()
    store.register('alice', 'Secret')
    assert not store.verify('alice', 'secret')
    assert not store.verify('alice', 'Secret ')
    assert not store.verify('Alice', 'Secret')
    assert not store.verify('nobody', 'Secret')


def test_concurrent_distinct_registrations_all_succeed():
    store = CredentialStore()
    names = [f'user{i}' for i in range(40)]
    results = run_concurrently(store.register, [(n, 'pw') for n in names])
    assert all(results)
    assert store.usernames() == sorted(names)


def test_concurrent_same_username_exactly_one_wins():
    store = CredentialStore()
    results = run_concurrently(store.register, [('carol', f'pw{i}') for i in range(8)])
    assert results.count(True) == 1
    assert store.usernames() == ['carol']
    winner = results.index(True)
    assert store.verify('carol', f'pw{winner}')


def test_hashed_store_does_not_keep_plaintext():
    store = CredentialStore(hash_passwords=True, iterations=1000)
    assert store.register('dave', 'hunter2')
    assert 'hunter2' not in store._secrets['dave']
    assert store.verify('dave', 'hunter2')
    assert not store.verify('dave', 'hunter3')


def test_hash_secret_uses_fresh_salt():
    first = hash_secret('pw', 1000)
    second = hash_secret('pw', 1000)
    assert first != second
    assert verify_secret('pw', first, 1000)
    assert verify_secret('pw', second, 1000)


def test_verify_secret_rejects_malformed_record():
    assert not verify_secret('pw', 'no-separator', 1000)


def test_lookups_wait_for_the_on_stored_hook():
    store = CredentialStore()
    lookups = []
    blocked = []

    def on_stored():
        t = threading.Thread(target=lambda: lookups.append(store.verify('erin', 'pw')))
        t.start()
        t.join(timeout=0.2)
        blocked.append(t.is_alive())
        on_stored.thread = t

    assert store.register('erin', 'pw', on_stored=on_stored)
    on_stored.thread.join(timeout=5)
    assert blocked == [True]
    assert lookups == [True]


def test_on_stored_not_called_for_duplicate():
    store = CredentialStore()
    store.register('erin', 'pw')
    calls = []
    assert not store.register('erin', 'other', on_stored=lambda: calls.append(1))
    assert calls == []
