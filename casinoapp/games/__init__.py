"""Game engines: crash, cups, blackjack, slots, roulette, Russian roulette and event betting."""
